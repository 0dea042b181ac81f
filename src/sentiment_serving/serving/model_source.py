"""
Model Source

Fetches serialized model archives from a URL or the local filesystem.

Features:
- http(s)://, file:// and plain path sources
- Download retries with exponential backoff on connection errors
- On-disk cache of downloaded archives, used as a fallback when the remote
  is unreachable
- Change detection via ETag / Last-Modified (HTTP) or mtime (files)
"""

import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Union
from urllib.parse import unquote, urlparse

import requests
from tenacity import (
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

DEFAULT_CACHE_DIR = Path(os.path.expanduser("~/.cache/sentiment-serving"))


class ModelSourceError(RuntimeError):
    """The model archive could not be obtained."""


class ModelSource:
    """
    Location of a model archive.

    Example:
        >>> source = ModelSource("https://example.com/sentiment_model.zip")
        >>> blob = source.fetch()
        >>> source.has_changed()
        False
    """

    def __init__(
        self,
        uri: str,
        cache_dir: Optional[Union[str, Path]] = None,
        timeout: float = 30.0,
        retry_attempts: int = 3,
        retry_wait: float = 1.0,
    ):
        """
        Initialize model source.

        Args:
            uri: http(s) URL, file:// URL or filesystem path
            cache_dir: Directory for cached downloads
            timeout: HTTP timeout in seconds
            retry_attempts: Download attempts before giving up
            retry_wait: Base seconds for exponential backoff between attempts
        """
        if not uri:
            raise ValueError("Model URI must be non-empty")

        self.uri = uri
        self.timeout = timeout
        self.retry_attempts = max(1, retry_attempts)
        self.retry_wait = retry_wait
        self.cache_dir = Path(cache_dir) if cache_dir else DEFAULT_CACHE_DIR

        parsed = urlparse(uri)
        self.scheme = parsed.scheme.lower() if len(parsed.scheme) > 1 else ""
        if self.scheme in ("http", "https"):
            self.path: Optional[Path] = None
        elif self.scheme == "file":
            self.path = Path(unquote(parsed.path))
        elif self.scheme == "":
            self.path = Path(uri).expanduser()
        else:
            raise ValueError(f"Unsupported model URI scheme: {parsed.scheme}")

        self._session = requests.Session()
        self._validators: Dict[str, str] = {}
        self._file_signature: Optional[tuple] = None

    @property
    def is_remote(self) -> bool:
        return self.path is None

    @property
    def cache_path(self) -> Path:
        """Cache file for this URI."""
        digest = hashlib.sha256(self.uri.encode("utf-8")).hexdigest()[:16]
        name = os.path.basename(urlparse(self.uri).path) or "model.zip"
        return self.cache_dir / f"{digest}-{name}"

    def fetch(self, use_cache: bool = True) -> bytes:
        """
        Read the model archive.

        Args:
            use_cache: Fall back to the cached copy when a download fails

        Returns:
            Archive bytes

        Raises:
            ModelSourceError: If the archive cannot be read or downloaded and
                no cached copy may be used
        """
        if self.is_remote:
            return self._fetch_remote(use_cache)
        return self._fetch_file()

    def has_changed(self) -> bool:
        """
        Check whether the archive changed since the last ``fetch()``.

        Network errors are reported as "unchanged" so a flaky remote does not
        trigger reloads.
        """
        if not self.is_remote:
            return self._file_signature is not None and self._stat() != self._file_signature

        headers = {}
        if "etag" in self._validators:
            headers["If-None-Match"] = self._validators["etag"]
        if "last_modified" in self._validators:
            headers["If-Modified-Since"] = self._validators["last_modified"]

        try:
            response = self._session.head(
                self.uri, headers=headers, timeout=self.timeout, allow_redirects=True
            )
        except requests.RequestException as e:
            logger.warning(f"Change check for {self.uri} failed: {e}")
            return False

        if response.status_code == 304:
            return False
        if response.status_code >= 400:
            logger.warning(
                f"Change check for {self.uri} returned HTTP {response.status_code}"
            )
            return False

        current = self._extract_validators(response.headers)
        if not current or not self._validators:
            # Without validators the only safe answer is to refetch.
            return True
        return current != self._validators

    # ------------------------------------------------------------------ #
    # Files
    # ------------------------------------------------------------------ #

    def _stat(self) -> Optional[tuple]:
        try:
            st = self.path.stat()
        except OSError:
            return None
        return (st.st_mtime_ns, st.st_size)

    def _fetch_file(self) -> bytes:
        logger.info(f"Reading model archive from {self.path}")
        try:
            data = self.path.read_bytes()
        except OSError as e:
            raise ModelSourceError(f"Could not read model archive {self.path}: {e}") from e
        self._file_signature = self._stat()
        logger.info(f"Read {len(data)} bytes from {self.path}")
        return data

    # ------------------------------------------------------------------ #
    # HTTP
    # ------------------------------------------------------------------ #

    def _fetch_remote(self, use_cache: bool = True) -> bytes:
        logger.info(f"Downloading model archive from {self.uri}")
        try:
            response = self._download()
        except requests.RequestException as e:
            cached = self._read_cache() if use_cache else None
            if cached is not None:
                logger.warning(
                    f"Download from {self.uri} failed ({e}); using cached copy "
                    f"{self.cache_path}"
                )
                return cached
            raise ModelSourceError(f"Could not download model from {self.uri}: {e}") from e

        data = response.content
        self._validators = self._extract_validators(response.headers)
        self._write_cache(data)
        logger.info(f"Downloaded {len(data)} bytes from {self.uri}")
        return data

    def _download(self) -> requests.Response:
        retrying = Retrying(
            stop=stop_after_attempt(self.retry_attempts),
            wait=wait_exponential(multiplier=self.retry_wait, max=30),
            retry=retry_if_exception_type(
                (requests.ConnectionError, requests.Timeout)
            ),
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.info(
                        f"Retrying download of {self.uri} "
                        f"(attempt {attempt.retry_state.attempt_number}/{self.retry_attempts})"
                    )
                response = self._session.get(self.uri, timeout=self.timeout)
                response.raise_for_status()
        return response

    @staticmethod
    def _extract_validators(headers) -> Dict[str, str]:
        validators = {}
        if headers.get("ETag"):
            validators["etag"] = headers["ETag"]
        if headers.get("Last-Modified"):
            validators["last_modified"] = headers["Last-Modified"]
        return validators

    def _meta_path(self) -> Path:
        return self.cache_path.with_name(self.cache_path.name + ".json")

    def _write_cache(self, data: bytes) -> None:
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
            self.cache_path.write_bytes(data)
            self._meta_path().write_text(
                json.dumps({"uri": self.uri, "validators": self._validators})
            )
        except OSError as e:
            logger.warning(f"Could not cache model archive at {self.cache_path}: {e}")

    def _read_cache(self) -> Optional[bytes]:
        if not self.cache_path.exists():
            return None
        try:
            data = self.cache_path.read_bytes()
        except OSError as e:
            logger.warning(f"Could not read cached model archive {self.cache_path}: {e}")
            return None
        try:
            meta = json.loads(self._meta_path().read_text())
            self._validators = dict(meta.get("validators", {}))
        except (OSError, ValueError):
            self._validators = {}
        return data

    def __repr__(self) -> str:
        return f"ModelSource(uri='{self.uri}', cache_dir='{self.cache_dir}')"
