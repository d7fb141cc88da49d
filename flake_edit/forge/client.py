"""HTTP client for the forge APIs that list tags and branches."""

from __future__ import annotations

from dataclasses import dataclass
import json
import os
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlparse
from urllib.request import Request, urlopen

from ..config import ForgeSettings
from ..errors import NetworkError
from ..logging import get_logger
from ..uri.grammar import FORGE, GIT, SourceRef
from ..uri.hosts import by_scheme, by_web_host

GITHUB = "github"
GITLAB = "gitlab"
GITEA = "gitea"
SOURCEHUT = "sourcehut"

_NO_RETRY_STATUSES = (401, 403, 404)
_PER_PAGE = 100
_MAX_PAGES = 10

_ENV_TOKENS = {
    GITHUB: ("GITHUB_TOKEN", "GH_TOKEN"),
    GITLAB: ("GITLAB_TOKEN",),
    GITEA: ("GITEA_TOKEN", "FORGEJO_TOKEN"),
}


@dataclass(frozen=True)
class VersionTag:
    """A tag offered by the forge."""

    tag: str
    created_at: Optional[str] = None


@dataclass(frozen=True)
class _Repo:
    kind: str
    host: str
    owner: str
    repo: str


class ForgeClient:
    """Lists versions of a source through its forge's REST API."""

    def __init__(
        self,
        *,
        timeout: float = 10.0,
        retries: int = 2,
        tokens: Optional[Mapping[str, str]] = None,
        opener: Optional[Callable[..., Any]] = None,
        sleep: Callable[[float], None] = time.sleep,
        backoff: float = 0.5,
    ) -> None:
        self.timeout = timeout
        self.retries = retries
        self._tokens = dict(tokens or {})
        self._opener = opener or urlopen
        self._sleep = sleep
        self._backoff = backoff
        self.logger = get_logger("forge")

    @classmethod
    def from_settings(cls, settings: ForgeSettings, **kwargs: Any) -> "ForgeClient":
        return cls(
            timeout=settings.timeout,
            retries=settings.retries,
            tokens=settings.tokens,
            **kwargs,
        )

    def detect_kind(self, source: SourceRef, *, input_id: Optional[str] = None) -> str:
        """Forge flavour serving `source`."""
        return self._repo(source, input_id).kind

    def list_versions(self, source: SourceRef, *, input_id: Optional[str] = None) -> List[VersionTag]:
        repo = self._repo(source, input_id)
        if repo.kind == SOURCEHUT:
            return [VersionTag(tag=name) for name in self._sourcehut_refs(repo, "refs/tags/", input_id)]
        items = self._paged(self._endpoint(repo, "tags"), repo, input_id)
        tags: List[VersionTag] = []
        seen = set()
        for item in items:
            name = item.get("name") if isinstance(item, dict) else None
            if not isinstance(name, str) or name in seen:
                continue
            seen.add(name)
            tags.append(VersionTag(tag=name, created_at=_created_at(item)))
        return tags

    def list_branches(self, source: SourceRef, *, input_id: Optional[str] = None) -> List[str]:
        repo = self._repo(source, input_id)
        if repo.kind == SOURCEHUT:
            return self._sourcehut_refs(repo, "refs/heads/", input_id)
        items = self._paged(self._endpoint(repo, "branches"), repo, input_id)
        names: List[str] = []
        for item in items:
            name = item.get("name") if isinstance(item, dict) else None
            if isinstance(name, str) and name not in names:
                names.append(name)
        return names

    # ------------------------------------------------------------------
    # Internals

    def _repo(self, source: SourceRef, input_id: Optional[str]) -> _Repo:
        if source.kind == FORGE:
            forge = by_scheme(source.scheme or "")
            if forge is None:
                raise NetworkError(
                    f"no API known for '{source.scheme}'",
                    transient=False,
                    remote=str(source),
                    input_id=input_id,
                )
            return _Repo(
                kind=forge.kind,
                host=source.host or forge.web_host,
                owner=source.owner or "",
                repo=source.repo or "",
            )
        if source.kind == GIT and source.url and source.url.startswith(("https://", "http://")):
            parsed = urlparse(source.url)
            segments = [segment for segment in parsed.path.split("/") if segment]
            if len(segments) >= 2 and parsed.hostname:
                name = segments[-1][:-4] if segments[-1].endswith(".git") else segments[-1]
                owner = "/".join(segments[:-1])
                known = by_web_host(parsed.hostname)
                kind = known.kind if known else self._query_version(parsed.hostname, input_id)
                return _Repo(kind=kind, host=parsed.hostname, owner=owner, repo=name)
        raise NetworkError(
            "version lookup needs a forge shorthand or an https git URL",
            transient=False,
            remote=str(source),
            input_id=input_id,
        )

    def _query_version(self, host: str, input_id: Optional[str]) -> str:
        """Identify self-hosted Gitea/Forgejo instances by their version endpoint."""
        url = f"https://{host}/api/v1/version"
        try:
            payload, _ = self._get_json(url, host, GITEA, input_id)
        except NetworkError as exc:
            if exc.transient:
                raise
            raise NetworkError(
                "unrecognised forge", transient=False, remote=host, input_id=input_id
            ) from exc
        if isinstance(payload, dict) and "version" in payload:
            return GITEA
        raise NetworkError("unrecognised forge", transient=False, remote=host, input_id=input_id)

    def _endpoint(self, repo: _Repo, what: str) -> str:
        if repo.kind == GITHUB:
            api = "https://api.github.com" if repo.host == "github.com" else f"https://{repo.host}/api/v3"
            return f"{api}/repos/{repo.owner}/{repo.repo}/{what}"
        if repo.kind == GITLAB:
            project = quote(f"{repo.owner}/{repo.repo}", safe="")
            return f"https://{repo.host}/api/v4/projects/{project}/repository/{what}"
        return f"https://{repo.host}/api/v1/repos/{repo.owner}/{repo.repo}/{what}"

    def _paged(self, endpoint: str, repo: _Repo, input_id: Optional[str]) -> List[Any]:
        size_key = "limit" if repo.kind == GITEA else "per_page"
        items: List[Any] = []
        for page in range(1, _MAX_PAGES + 1):
            url = f"{endpoint}?{size_key}={_PER_PAGE}&page={page}"
            payload, _ = self._get_json(url, repo.host, repo.kind, input_id)
            if not isinstance(payload, list):
                raise NetworkError(
                    "unexpected response shape", transient=False, remote=url, input_id=input_id
                )
            items.extend(payload)
            if len(payload) < _PER_PAGE:
                break
        return items

    def _sourcehut_refs(self, repo: _Repo, prefix: str, input_id: Optional[str]) -> List[str]:
        url = f"https://{repo.host}/api/{repo.owner}/repos/{repo.repo}/refs"
        payload, _ = self._get_json(url, repo.host, SOURCEHUT, input_id)
        results = payload.get("results", []) if isinstance(payload, dict) else []
        names = []
        for entry in results:
            name = entry.get("name") if isinstance(entry, dict) else None
            if isinstance(name, str) and name.startswith(prefix):
                names.append(name[len(prefix):])
        return names

    def _headers(self, host: str, kind: str) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": "flake-edit"}
        token = self._tokens.get(host)
        if token is None:
            for key in _ENV_TOKENS.get(kind, ()):
                if os.environ.get(key):
                    token = os.environ[key]
                    break
        if token:
            if kind == GITLAB:
                headers["PRIVATE-TOKEN"] = token
            elif kind == GITEA:
                headers["Authorization"] = f"token {token}"
            else:
                headers["Authorization"] = f"Bearer {token}"
        return headers

    def _get_json(
        self, url: str, host: str, kind: str, input_id: Optional[str]
    ) -> Tuple[Any, Mapping[str, str]]:
        request = Request(url, headers=self._headers(host, kind), method="GET")
        last_error: Optional[NetworkError] = None
        for attempt in range(self.retries + 1):
            try:
                with self._opener(request, timeout=self.timeout) as response:  # type: ignore[arg-type]
                    raw = response.read()
                    headers = dict(getattr(response, "headers", {}) or {})
            except HTTPError as exc:
                if exc.code in _NO_RETRY_STATUSES or exc.code < 500:
                    raise NetworkError(
                        f"HTTP {exc.code} {exc.reason}",
                        transient=False,
                        remote=url,
                        input_id=input_id,
                        status=exc.code,
                    ) from exc
                last_error = NetworkError(
                    f"HTTP {exc.code} {exc.reason}",
                    transient=True,
                    remote=url,
                    input_id=input_id,
                    status=exc.code,
                )
            except (URLError, OSError) as exc:
                reason = getattr(exc, "reason", exc)
                last_error = NetworkError(
                    str(reason), transient=True, remote=url, input_id=input_id
                )
            else:
                try:
                    return json.loads(raw.decode("utf-8")), headers
                except ValueError as exc:
                    raise NetworkError(
                        "response is not valid JSON",
                        transient=False,
                        remote=url,
                        input_id=input_id,
                    ) from exc
            if attempt < self.retries:
                self.logger.warning(
                    "Request to %s failed (%s); retrying (%d/%d)",
                    url,
                    last_error,
                    attempt + 1,
                    self.retries,
                )
                self._sleep(self._backoff * (2 ** attempt))
        assert last_error is not None
        raise last_error


def _created_at(item: Any) -> Optional[str]:
    if not isinstance(item, dict):
        return None
    for key in ("created_at", "created"):
        value = item.get(key)
        if isinstance(value, str):
            return value
    commit = item.get("commit")
    if isinstance(commit, dict):
        for key in ("created_at", "created", "committed_date"):
            value = commit.get(key)
            if isinstance(value, str):
                return value
    return None


__all__ = ["ForgeClient", "GITEA", "GITHUB", "GITLAB", "SOURCEHUT", "VersionTag"]
