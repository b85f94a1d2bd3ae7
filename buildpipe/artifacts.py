# buildpipe/artifacts.py
import logging
import tarfile
from pathlib import Path

import requests

from buildpipe.errors import BuildStepFailure

logger = logging.getLogger("buildpipe.artifacts")

EXCLUDED_DIRS = {".git"}


def _skip_vcs(info: tarfile.TarInfo):
    parts = Path(info.name).parts
    if any(p in EXCLUDED_DIRS for p in parts):
        return None
    return info


def package_directory(src: Path, dest: Path) -> Path:
    """Write src as a gzip tarball at dest (paths relative to src, .git left out)."""
    try:
        with tarfile.open(dest, "w:gz") as tar:
            tar.add(str(src), arcname=".", filter=_skip_vcs)
    except (OSError, tarfile.TarError) as e:
        raise BuildStepFailure("package", f"Failed to create artifact: {e}") from e
    return dest


class ArtifactClient:
    """Client for the external artifact store: POST/GET /artifacts/{buildId}."""

    def __init__(self, base_url: str, timeout: float = 30, session: requests.Session | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()

    def url_for(self, build_id: str) -> str:
        return f"{self.base_url}/artifacts/{build_id}"

    def upload(self, build_id: str, archive: Path) -> str:
        """Upload the archive; returns its retrieval reference."""
        url = self.url_for(build_id)
        logger.info("Uploading artifact %s to %s", archive.name, url)
        try:
            with archive.open("rb") as fh:
                r = self.session.post(
                    url,
                    files={"artifact": (f"{build_id}.tar.gz", fh, "application/gzip")},
                    timeout=self.timeout,
                )
        except (OSError, requests.RequestException) as e:
            raise BuildStepFailure("upload", f"Failed to upload artifact: {e}") from e
        if r.status_code != 200:
            raise BuildStepFailure(
                "upload", f"Failed to upload artifact: storage returned {r.status_code}: {r.text[:200]}")
        return url
