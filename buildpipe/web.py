# buildpipe/web.py
import logging

from flask import Flask, abort, jsonify, render_template_string, request
from jinja2 import DictLoader

from buildpipe.bus import Publisher
from buildpipe.config import load_config, topics
from buildpipe.errors import NotFoundError, SubmissionError, TransientInfraError
from buildpipe.models import BuildRecord, LogEntry, new_request
from buildpipe.state import BuildStore

logger = logging.getLogger("buildpipe.web")

DEFAULT_LIMIT = 100
MAX_LIMIT = 1000
PAGE_LIMIT = 50

HTML_BASE = """
<!doctype html>
<html lang="en">
  <head>
    <meta charset="utf-8"><meta name="viewport" content="width=device-width, initial-scale=1">
    <title>Build Pipeline</title>
    <link href="https://cdn.jsdelivr.net/npm/bootstrap@5.3.3/dist/css/bootstrap.min.css" rel="stylesheet">
  </head>
  <body class="bg-light">
    <nav class="navbar navbar-expand-lg bg-body-tertiary">
      <div class="container-fluid">
        <a class="navbar-brand" href="{{ url_for('index') }}">Build Pipeline</a>
      </div>
    </nav>
    <div class="container py-4">
      {% block body %}{% endblock %}
    </div>
  </body>
</html>
"""

HTML_INDEX = """
{% extends "base.html" %}
{% block body %}
<h1 class="mb-3">Recent Builds</h1>
<table class="table table-striped table-hover">
  <thead><tr><th>Build</th><th>Repository</th><th>Branch</th><th>Status</th><th>Message</th><th>Created</th></tr></thead>
  <tbody>
  {% for b in builds %}
    <tr>
      <td><a href="{{ url_for('build_page', build_id=b.id) }}"><code>{{ b.id[:8] }}</code></a></td>
      <td>{{ b.repository_url }}</td>
      <td>{{ b.branch or "" }}</td>
      <td><span class="badge {{ badge(b.phase.value) }}">{{ b.phase.value }}</span></td>
      <td>{{ b.status_message }}</td>
      <td>{{ b.created_at.strftime("%Y-%m-%d %H:%M:%S") }}</td>
    </tr>
  {% else %}
    <tr><td colspan="6" class="text-muted">No builds yet.</td></tr>
  {% endfor %}
  </tbody>
</table>
{% endblock %}
"""

HTML_BUILD = """
{% extends "base.html" %}
{% block body %}
<h1>Build <code>{{ b.id }}</code></h1>
<ul>
  <li>Repository: {{ b.repository_url }}</li>
  <li>Branch: {{ b.branch or "default" }}{% if b.commit_hash %} @ <code>{{ b.commit_hash }}</code>{% endif %}</li>
  <li>Status: <span class="badge {{ badge(b.phase.value) }}">{{ b.phase.value }}</span> {{ b.status_message }}</li>
  {% if b.duration is not none %}<li>Duration: {{ "%.1f"|format(b.duration / 1000) }}s</li>{% endif %}
  {% if b.artifact_reference %}<li>Artifact: <a href="{{ b.artifact_reference }}">{{ b.artifact_reference }}</a></li>{% endif %}
</ul>
<h4 class="mt-4">Logs</h4>
<pre class="bg-dark text-light p-3" style="max-height: 60vh; overflow: auto">{% for l in logs %}{{ l.line }}
{% endfor %}</pre>
{% endblock %}
"""


def _badge(phase: str) -> str:
    return {
        "queued": "text-bg-secondary",
        "running": "text-bg-primary",
        "succeeded": "text-bg-success",
        "failed": "text-bg-danger",
    }.get(phase, "text-bg-light")


def _record_json(record: BuildRecord) -> dict:
    return record.model_dump(mode="json")


def _logs_json(logs: list[LogEntry]) -> list[dict]:
    return [{"line": l.line, "time": l.emitted_at.isoformat(), "seq": l.seq} for l in logs]


def create_app(store: BuildStore | None = None, publisher=None, cfg: dict | None = None) -> Flask:
    cfg = cfg or load_config()
    store = store or BuildStore.from_config(cfg)
    publisher = publisher or Publisher(cfg["BROKERS"])
    requests_topic = topics(cfg)["requests"]

    app = Flask(__name__)
    app.jinja_loader = DictLoader({"base.html": HTML_BASE})
    app.jinja_env.globals["badge"] = _badge

    def _limit_arg(name: str, default: int) -> int:
        try:
            limit = int(request.args.get(name, default))
        except ValueError:
            abort(400, description=f"{name} must be an integer")
        return max(1, min(limit, MAX_LIMIT))

    def _get(build_id: str) -> BuildRecord:
        try:
            return store.get_build(build_id)
        except NotFoundError:
            abort(404, description=f"build not found: {build_id}")

    @app.errorhandler(400)
    def bad_request(e):
        if request.path.startswith("/builds"):
            return jsonify({"error": e.description}), 400
        return e

    @app.errorhandler(404)
    def not_found(e):
        if request.path.startswith("/builds"):
            return jsonify({"error": e.description}), 404
        return e

    # ── JSON API ─────────────────────────────────────────────────────────────

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.get("/builds")
    def list_builds():
        limit = _limit_arg("limit", DEFAULT_LIMIT)
        return jsonify([_record_json(r) for r in store.list_builds(limit)])

    @app.post("/builds")
    def submit_build():
        body = request.get_json(silent=True) or {}
        try:
            req = new_request(
                repository_url=str(body.get("repositoryUrl") or ""),
                submitter_id=str(body.get("submitterId") or ""),
                branch=body.get("branch"),
                commit_hash=body.get("commitHash"),
            )
        except SubmissionError as e:
            return jsonify({"error": str(e)}), 400
        try:
            publisher.publish(requests_topic, req.id, req)
        except TransientInfraError as e:
            logger.error("Submission of %s failed: %s", req.repository_url, e)
            return jsonify({"error": "build queue unavailable"}), 503
        logger.info("Accepted build %s for %s", req.id, req.repository_url)
        return jsonify({"buildId": req.id, "status": "queued"}), 202

    @app.get("/builds/<build_id>")
    def get_build(build_id: str):
        record = _get(build_id)
        body = _record_json(record)
        body["logs"] = _logs_json(store.get_logs(build_id))
        return jsonify(body)

    @app.get("/builds/<build_id>/logs")
    def get_logs(build_id: str):
        _get(build_id)
        return jsonify(_logs_json(store.get_logs(build_id)))

    # ── HTML dashboard ───────────────────────────────────────────────────────

    @app.route("/")
    def index():
        builds = store.list_builds(_limit_arg("n", PAGE_LIMIT))
        return render_template_string(HTML_INDEX, builds=builds)

    @app.route("/build/<build_id>")
    def build_page(build_id: str):
        record = _get(build_id)
        return render_template_string(HTML_BUILD, b=record, logs=store.get_logs(build_id))

    return app


if __name__ == "__main__":
    cfg = load_config()
    logging.basicConfig(level=cfg["LOG_LEVEL"], format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    create_app(cfg=cfg).run(host="0.0.0.0", port=cfg["HTTP_PORT"])
