import logging
import re
from typing import Any, Dict, Optional
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

JOB_ID_PATTERN = re.compile(r"customer_outputs/[^/]+/([^/]+)", re.IGNORECASE)


class StorageUrlResolver:
    """
    Rewrites storage URIs (``s3://bucket/key`` and path-style S3 URLs) into
    fetchable HTTP(S) URLs.

    The default bucket is served from its region-specific host; any bucket with
    an explicit entry in ``bucket_http_bases`` uses that base; every other bucket
    falls back to the generic virtual-hosted-style URL.
    """

    def __init__(self, default_bucket: str, default_http_base: str,
                 bucket_http_bases: Optional[Dict[str, str]] = None):
        self.default_bucket = default_bucket
        self.default_http_base = default_http_base.rstrip("/")
        self.bucket_http_bases = {
            bucket: base.rstrip("/") for bucket, base in (bucket_http_bases or {}).items()
        }

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "StorageUrlResolver":
        storage_cfg = config.get("storage", {})
        return cls(
            default_bucket=storage_cfg.get("default_bucket", ""),
            default_http_base=storage_cfg.get("default_http_base", ""),
            bucket_http_bases=storage_cfg.get("bucket_http_bases") or {},
        )

    def http_base_for_bucket(self, bucket: str) -> str:
        if bucket == self.default_bucket and self.default_http_base:
            return self.default_http_base
        if bucket in self.bucket_http_bases:
            return self.bucket_http_bases[bucket]
        return f"https://{bucket}.s3.amazonaws.com"

    def to_http(self, uri: Any) -> Any:
        """Convert an ``s3://`` URI; anything else is returned untouched."""
        if not uri or not isinstance(uri, str):
            return uri
        if not uri.startswith("s3://"):
            return uri
        remainder = uri[len("s3://"):]
        bucket, sep, key = remainder.partition("/")
        if not sep or not key:
            return uri
        return f"{self.http_base_for_bucket(bucket)}/{key.lstrip('/')}"

    def normalize_http_url(self, url: Any) -> Any:
        """Rewrite path-style and generic-host S3 URLs onto the configured hosts."""
        if not url or not isinstance(url, str):
            return url
        try:
            parsed = urlparse(url)
        except ValueError:
            return url
        hostname = parsed.hostname or ""
        path = parsed.path.lstrip("/")

        if hostname == "s3.amazonaws.com":
            bucket, sep, key = path.partition("/")
            if sep:
                return f"{self.http_base_for_bucket(bucket)}/{key}"
        if self.default_bucket and hostname == f"{self.default_bucket}.s3.amazonaws.com":
            return f"{self.http_base_for_bucket(self.default_bucket)}/{path}"
        return url

    def rewrite_master_playlist_url(self, original_url: Any, job_prefix: str) -> Any:
        """
        Point an HLS master playlist recorded under ``gps_videos/`` at the job's
        published ``data/videos/`` folder.
        """
        if not original_url or not isinstance(original_url, str):
            return original_url
        normalized_prefix = ensure_trailing_slash(job_prefix)
        try:
            path = urlparse(original_url).path.lstrip("/")
        except ValueError:
            path = ""
        marker = "gps_videos/"
        idx = path.find(marker)
        if idx != -1:
            relative = path[idx + len(marker):]
            return f"{self.default_http_base}/{normalized_prefix}data/videos/{relative}"
        return self.normalize_http_url(original_url)


def ensure_trailing_slash(value: str) -> str:
    return value if value.endswith("/") else f"{value}/"


def extract_job_id_from_source_url(source_url: Any) -> Optional[str]:
    """Job id is the path element right after ``customer_outputs/<dataset>/``."""
    if not source_url or not isinstance(source_url, str):
        return None
    match = JOB_ID_PATTERN.search(source_url)
    if match and match.group(1):
        return match.group(1).rstrip("/")
    return None
