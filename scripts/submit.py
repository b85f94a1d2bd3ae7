import argparse, json
from kafka import KafkaProducer
from buildpipe.bus import encode, split_brokers
from buildpipe.config import load_config, topics
from buildpipe.errors import SubmissionError
from buildpipe.models import new_request

def main():
    p = argparse.ArgumentParser(description="Submit a build request")
    p.add_argument("repository_url", help="Git URL of the repository to build")
    p.add_argument("--branch", default=None)
    p.add_argument("--commit", default=None, help="Commit hash to check out after the branch")
    p.add_argument("--submitter", default="cli")
    a = p.parse_args()

    try:
        req = new_request(a.repository_url, submitter_id=a.submitter, branch=a.branch, commit_hash=a.commit)
    except SubmissionError as e:
        p.error(f"invalid submission: {e}")

    cfg = load_config()
    brokers = split_brokers(cfg["BROKERS"])
    topic = topics(cfg)["requests"]

    prod = KafkaProducer(
        bootstrap_servers=brokers,
        key_serializer=lambda k: k.encode(),
        value_serializer=lambda v: json.dumps(v).encode(),
    )
    prod.send(topic, key=req.id, value=encode(req)).get(timeout=10)
    prod.flush()
    print(f"Submitted build {req.id} -> {topic} @ {brokers}")

if __name__ == "__main__":
    main()
