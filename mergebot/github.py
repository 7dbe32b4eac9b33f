import time
import logging
from typing import Any, Dict, Optional, Tuple, List
import httpx
import jwt
from datetime import datetime, timedelta, timezone

from .config import SETTINGS
from .metrics import (
    github_api_requests_total,
    github_api_latency_seconds,
    github_rate_limit_remaining,
    github_rate_limit_reset,
)

logger = logging.getLogger(__name__)

STATUS_CONTEXT = "mergebot"

ADD_REACTION_MUTATION = """
mutation($subjectId: ID!, $content: ReactionContent!) {
  addReaction(input: {subjectId: $subjectId, content: $content}) {
    reaction { content }
  }
}
"""


class GitHubError(RuntimeError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def _safe_url(url: str) -> str:
    try:
        u = httpx.URL(url)
        # remove query to avoid leaking params
        return str(u.copy_with(query=None))
    except Exception:
        return url.split("?", 1)[0]


def _param_keys(d: Optional[Dict[str, Any]]) -> List[str]:
    return sorted((d or {}).keys())


def _error_message(resp: httpx.Response) -> str:
    try:
        return str(resp.json().get("message", resp.text))
    except Exception:
        return resp.text


class GitHubClient:
    # installation id -> (token, expiry epoch); shared so every client reuses one token
    _tok_cache: Dict[int, Tuple[str, float]] = {}
    # Refresh installation tokens this many seconds before GitHub expires them
    _tok_safety_margin = 120

    def __init__(self, installation_id: Optional[int] = None, token: Optional[str] = None):
        self.installation_id = installation_id if installation_id is not None else SETTINGS.installation_id
        self.static_token = token if token is not None else SETTINGS.github_token
        self.base_url = SETTINGS.github_api_url
        self.app_id = SETTINGS.app_id
        self.private_key_pem = SETTINGS.app_private_key.encode("utf-8")

    def _app_jwt(self) -> str:
        now = datetime.now(tz=timezone.utc)
        payload = {
            "iat": int(now.timestamp()) - 60,
            "exp": int((now + timedelta(minutes=10)).timestamp()),
            "iss": self.app_id,
        }
        return jwt.encode(payload, self.private_key_pem, algorithm="RS256")

    def _installation_token(self) -> str:
        inst = int(self.installation_id or 0)
        cached = self._tok_cache.get(inst)
        if cached and time.time() < cached[1] - self._tok_safety_margin:
            return cached[0]
        url = f"{self.base_url}/app/installations/{inst}/access_tokens"
        headers = {
            "Authorization": f"Bearer {self._app_jwt()}",
            "Accept": "application/vnd.github+json",
        }
        endpoint = "POST /app/installations/{id}/access_tokens"
        start = time.perf_counter()
        logger.debug("github.request: method=POST path=%s installation=%s phase=token_exchange", _safe_url(url), inst)
        resp = httpx.post(url, headers=headers, timeout=30)
        duration = time.perf_counter() - start
        github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
        github_api_requests_total.labels(endpoint=endpoint, status=str(resp.status_code)).inc()
        logger.debug(
            "github.response: method=POST path=%s status=%s duration_ms=%d installation=%s phase=token_exchange",
            _safe_url(url),
            resp.status_code,
            int(duration * 1000),
            inst,
        )
        resp.raise_for_status()
        data = resp.json()
        token = data.get("token")
        expires_at = data.get("expires_at")  # e.g., 2024-01-01T00:00:00Z
        if expires_at:
            expiry = datetime.fromisoformat(expires_at.replace("Z", "+00:00")).timestamp()
        else:
            expiry = time.time() + 3600
        self._tok_cache[inst] = (token, expiry)
        return token

    def _headers(self) -> Dict[str, str]:
        if self.static_token:
            auth = f"token {self.static_token}"
        elif self.app_id and self.installation_id:
            auth = f"token {self._installation_token()}"
        else:
            raise GitHubError("no GitHub credentials configured (GITHUB_TOKEN or APP_ID/INSTALLATION_ID)")
        return {
            "Authorization": auth,
            "Accept": "application/vnd.github+json",
            "User-Agent": "mergebot/1.0",
        }

    def request(
        self, method: str, path: str, params: Optional[Dict[str, Any]] = None, data: Optional[Any] = None
    ) -> httpx.Response:
        url = path if path.startswith("http") else f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"
        endpoint = f"{method} {path if path.startswith('/') else '/' + path}"

        def should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
            # Retry on network/timeout errors
            if exc is not None:
                return True
            if resp is None:
                return False
            status = resp.status_code
            # Retry 5xx always; 429/403 (rate limit/secondary) for idempotent requests only.
            # Ref updates are PATCH and never retried blindly.
            idempotent = method.upper() in ("GET", "PUT", "DELETE")
            if status >= 500:
                return True
            if status in (429, 403) and idempotent:
                return True
            return False

        attempts = 0
        while True:
            attempts += 1
            start = time.perf_counter()
            exc: Optional[Exception] = None
            resp: Optional[httpx.Response] = None
            logger.debug(
                "github.request: method=%s path=%s params=%s attempt=%s",
                method.upper(),
                _safe_url(url),
                _param_keys(params),
                attempts,
            )
            try:
                resp = httpx.request(method, url, headers=self._headers(), params=params, json=data, timeout=60)
            except (httpx.TimeoutException, httpx.TransportError) as e:
                exc = e
            duration = time.perf_counter() - start
            status_label = str(resp.status_code) if resp is not None else "exc"
            github_api_latency_seconds.labels(endpoint=endpoint).observe(duration)
            github_api_requests_total.labels(endpoint=endpoint, status=status_label).inc()
            if resp is not None:
                self._handle_rate_limit(resp)
                logger.debug(
                    "github.response: method=%s path=%s status=%s duration_ms=%d attempt=%s",
                    method.upper(),
                    _safe_url(url),
                    resp.status_code,
                    int(duration * 1000),
                    attempts,
                )
            else:
                logger.debug(
                    "github.response_error: method=%s path=%s error=%s duration_ms=%d attempt=%s",
                    method.upper(),
                    _safe_url(url),
                    exc,
                    int(duration * 1000),
                    attempts,
                )
            if not should_retry(resp, exc) or attempts >= SETTINGS.max_retries:
                if exc is not None:
                    raise exc
                return resp  # type: ignore[return-value]
            # sleep with exponential backoff
            sleep_s = min(
                SETTINGS.backoff_base_seconds * (SETTINGS.backoff_factor ** (attempts - 1)),
                SETTINGS.max_backoff_seconds,
            )
            logger.debug(
                "github.retry: method=%s path=%s sleep_seconds=%s attempt=%s",
                method.upper(),
                _safe_url(url),
                sleep_s,
                attempts,
            )
            time.sleep(sleep_s)

    def _handle_rate_limit(self, resp: httpx.Response) -> None:
        remaining = resp.headers.get("X-RateLimit-Remaining")
        reset = resp.headers.get("X-RateLimit-Reset")
        try:
            if remaining is not None:
                github_rate_limit_remaining.set(int(remaining))
            if reset is not None:
                github_rate_limit_reset.set(int(reset))
        except ValueError:
            return
        if resp.status_code in (403, 429) and remaining == "0":
            logger.warning("GitHub rate limit exhausted; resets at %s", reset)

    # --- Comments and reactions ---
    def create_comment(self, owner: str, repo: str, number: int, body: str) -> None:
        r = self.request("POST", f"/repos/{owner}/{repo}/issues/{number}/comments", data={"body": body})
        if r.status_code != 201:
            raise GitHubError(f"create comment on #{number} failed: {_error_message(r)}", r.status_code)

    def add_reaction(self, node_id: str, content: str = "ROCKET") -> bool:
        """Add a reaction to any reactable node (issue comment, review, review comment)."""
        if not node_id:
            return False
        payload = {"query": ADD_REACTION_MUTATION, "variables": {"subjectId": node_id, "content": content}}
        r = self.request("POST", "/graphql", data=payload)
        if r.status_code != 200:
            return False
        try:
            return not r.json().get("errors")
        except ValueError:
            return False

    # --- Permissions ---
    def is_collaborator(self, owner: str, repo: str, user: str) -> bool:
        r = self.request("GET", f"/repos/{owner}/{repo}/collaborators/{user}")
        if r.status_code == 204:
            return True
        if r.status_code == 404:
            return False
        raise GitHubError(f"collaborator check for {user} failed: {_error_message(r)}", r.status_code)

    # --- Pull requests ---
    def get_pr(self, owner: str, repo: str, number: int) -> Optional[Dict[str, Any]]:
        r = self.request("GET", f"/repos/{owner}/{repo}/pulls/{number}")
        if r.status_code == 200:
            return r.json()
        return None

    def list_open_pulls(self, owner: str, repo: str) -> List[Dict[str, Any]]:
        prs: List[Dict[str, Any]] = []
        page = 1
        while True:
            params = {"state": "open", "per_page": 100, "page": page}
            r = self.request("GET", f"/repos/{owner}/{repo}/pulls", params=params)
            if r.status_code != 200:
                raise GitHubError(f"listing open pull requests failed: {_error_message(r)}", r.status_code)
            batch = r.json()
            prs.extend(batch)
            if len(batch) < 100:
                break
            page += 1
        return prs

    # --- Git refs and statuses ---
    def update_ref(self, owner: str, repo: str, ref: str, sha: str, force: bool = False) -> None:
        """Move ``ref`` (e.g. ``heads/main``) to ``sha``; non-force updates must fast-forward."""
        r = self.request("PATCH", f"/repos/{owner}/{repo}/git/refs/{ref}", data={"sha": sha, "force": force})
        if r.status_code != 200:
            raise GitHubError(f"updating {ref} to {sha} failed: {_error_message(r)}", r.status_code)

    def delete_ref(self, owner: str, repo: str, ref: str) -> bool:
        r = self.request("DELETE", f"/repos/{owner}/{repo}/git/refs/{ref}")
        return r.status_code == 204

    def create_status(
        self,
        owner: str,
        repo: str,
        sha: str,
        state: str,
        description: Optional[str] = None,
        target_url: Optional[str] = None,
    ) -> bool:
        data: Dict[str, Any] = {"state": state, "context": STATUS_CONTEXT}
        if description:
            data["description"] = description
        if target_url:
            data["target_url"] = target_url
        r = self.request("POST", f"/repos/{owner}/{repo}/statuses/{sha}", data=data)
        return r.status_code == 201
