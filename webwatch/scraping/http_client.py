# webwatch/scraping/http_client.py
from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

LOG = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)
DEFAULT_TIMEOUT_SEC = 300.0
_CHUNK_SIZE = 64 * 1024


class FetchError(Exception):
    """
    A fetch that did not produce a usable response.
    kind: "timeout" | "connection" | "proxy" | "request" | "http"
    """

    def __init__(self, message: str, *, kind: str = "request", url: str | None = None):
        super().__init__(message)
        self.kind = kind
        self.url = url


class HttpStatusError(FetchError):
    """Terminal non-2xx response."""

    def __init__(self, status: int, url: str, reason: str | None = None):
        detail = f" {reason}" if reason else ""
        super().__init__(f"HTTP error: {status}{detail}", kind="http", url=url)
        self.status = status


class HttpClient:
    """
    Single-attempt HTTP client for scraping jobs.

    One shared session serves requests without a proxy. A request with a
    proxy gets its own short-lived session so no proxy state leaks between
    jobs running on different threads.
    """

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SEC,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        self.timeout = float(timeout)
        self.user_agent = user_agent
        self.session = self._new_session()

    # ---- public ----
    def fetch(
        self,
        url: str,
        user_agent: str | None = None,
        proxy_url: str | None = None,
        timeout: float | None = None,
    ) -> str:
        """
        GET `url` once and return the decoded body.

        Raises:
            HttpStatusError: on any non-2xx status
            FetchError: on timeout (connect + transfer), connection/proxy failure
        """
        limit = float(timeout or self.timeout)
        headers = {"User-Agent": user_agent or self.user_agent}

        if proxy_url:
            LOG.debug("Fetching %s via proxy", url)
            with self._new_session() as session:
                session.proxies.update({"http": proxy_url, "https": proxy_url})
                return self._get_text(session, url, headers, limit)
        return self._get_text(self.session, url, headers, limit)

    def check_url(self, url: str, timeout: float = 30.0) -> bool:
        """HEAD the URL; True iff it answers with a 2xx status."""
        try:
            resp = self.session.head(url, timeout=timeout, allow_redirects=True)
        except requests.RequestException as e:
            raise _translate(e, url) from e
        return resp.ok

    def close(self) -> None:
        try:
            self.session.close()
        except Exception:
            LOG.debug("HttpClient.close() swallow", exc_info=True)

    # ---- internals ----
    def _new_session(self) -> requests.Session:
        session = requests.Session()
        session.headers.update({
            "User-Agent": self.user_agent,
            "Accept": "text/html,application/xhtml+xml,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        })
        # One attempt per fire: no retries on any failure class, statuses passed through.
        retry = Retry(total=0, raise_on_status=False)
        adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=20)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _get_text(
        self,
        session: requests.Session,
        url: str,
        headers: Mapping[str, str],
        limit: float,
    ) -> str:
        """
        Download on a worker thread and wait at most `limit` seconds for it.

        Connect/read timeouts only bound each socket wait, so a server that
        drips bytes could hold a plain streaming read open far past the
        ceiling. On expiry the response is closed under the worker and the
        caller gets a timeout at once.
        """
        state: dict = {}
        done = threading.Event()

        def _worker() -> None:
            try:
                state["body"] = self._download(session, url, headers, limit, state)
            except Exception as e:
                state["error"] = e
            finally:
                done.set()

        worker = threading.Thread(target=_worker, name="webwatch-fetch", daemon=True)
        worker.start()
        if not done.wait(limit):
            state["abandoned"] = True
            _close_quietly(state.get("response"))
            raise FetchError(f"Timed out after {limit:g}s fetching {url}", kind="timeout", url=url)
        if "error" in state:
            raise state["error"]
        return state["body"]

    def _download(
        self,
        session: requests.Session,
        url: str,
        headers: Mapping[str, str],
        limit: float,
        state: dict,
    ) -> str:
        deadline = time.monotonic() + limit
        try:
            resp = session.get(url, headers=dict(headers), timeout=(limit, limit), stream=True)
        except requests.RequestException as e:
            raise _translate(e, url) from e
        state["response"] = resp

        with resp:
            if not 200 <= resp.status_code < 300:
                raise HttpStatusError(resp.status_code, url, resp.reason)
            chunks: list[bytes] = []
            try:
                for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                    if state.get("abandoned") or time.monotonic() > deadline:
                        raise FetchError(f"Timed out after {limit:g}s reading {url}", kind="timeout", url=url)
                    chunks.append(chunk)
            except requests.RequestException as e:
                raise _translate(e, url) from e

        body = b"".join(chunks)
        encoding = _charset_from_headers(resp.headers) or "utf-8"
        try:
            return body.decode(encoding, errors="replace")
        except LookupError:
            return body.decode("utf-8", errors="replace")


def _close_quietly(resp: requests.Response | None) -> None:
    if resp is None:
        return
    try:
        resp.close()
    except Exception:
        LOG.debug("Closing abandoned response failed", exc_info=True)


def _charset_from_headers(headers: Mapping[str, str]) -> str | None:
    content_type = headers.get("Content-Type") or headers.get("content-type") or ""
    for part in content_type.split(";")[1:]:
        key, _, value = part.strip().partition("=")
        if key.lower() == "charset" and value:
            return value.strip().strip("\"'")
    return None


def _translate(err: requests.RequestException, url: str) -> FetchError:
    """Map a requests exception onto the FetchError taxonomy."""
    if isinstance(err, requests.exceptions.Timeout):
        return FetchError(f"Timed out fetching {url}: {err}", kind="timeout", url=url)
    if isinstance(err, (requests.exceptions.ProxyError, requests.exceptions.InvalidProxyURL)):
        return FetchError(f"Proxy failure fetching {url}: {err}", kind="proxy", url=url)
    if isinstance(err, requests.exceptions.ConnectionError):
        return FetchError(f"Failed to fetch URL {url}: {err}", kind="connection", url=url)
    return FetchError(f"Failed to fetch URL {url}: {err}", kind="request", url=url)
