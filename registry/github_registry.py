import logging

import requests

from fleet.models import RunnerRecord

log = logging.getLogger("registry.github")

API_URL = "https://api.github.com"


class RegistryError(RuntimeError):
    pass


class GitHubRunnerRegistry:
    """
    Self-hosted runner registrations of one repository, via the GitHub REST API.

    Records are read-only here apart from deletion; nothing is cached between calls.
    `ctx`, when given, is a RunContext whose request counter is bumped on every call.
    """

    def __init__(
        self,
        token: str,
        repository: str,
        api_url: str = API_URL,
        session: requests.Session | None = None,
        timeout: int = 30,
        ctx=None,
    ):
        owner, _, repo = repository.partition("/")
        if not owner or not repo:
            raise ValueError(f"repository must be 'owner/repo', got {repository!r}")
        self.owner = owner
        self.repo = repo
        self.base_url = f"{api_url.rstrip('/')}/repos/{owner}/{repo}/actions/runners"
        self.timeout = timeout
        self.ctx = ctx
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        })

    @property
    def repo_url(self) -> str:
        return f"https://github.com/{self.owner}/{self.repo}"

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        if self.ctx is not None:
            self.ctx.platform_requests += 1
        try:
            return self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            raise RegistryError(f"GitHub {method} {url} failed: {e}")

    @staticmethod
    def _json(resp: requests.Response) -> dict:
        try:
            return resp.json()
        except ValueError as e:
            # requests' JSONDecodeError is a ValueError
            raise RegistryError(f"GitHub returned an unreadable body ({resp.status_code}): {e}")

    def list_runners(self) -> list[RunnerRecord]:
        runners = []
        url = self.base_url
        params = {"per_page": 100}
        while url:
            resp = self._request("GET", url, params=params)
            if not resp.ok:
                raise RegistryError(f"Listing runners failed: {resp.status_code} {resp.text[:200]}")
            runners.extend(RunnerRecord.from_api(r) for r in self._json(resp).get("runners", []))
            # the next link already carries the query string
            url = resp.links.get("next", {}).get("url")
            params = None
        log.debug("Fetched %s runner registrations", len(runners))
        return runners

    def create_registration_token(self) -> str:
        resp = self._request("POST", f"{self.base_url}/registration-token")
        if not resp.ok:
            log.error("GitHub registration token request failed: %s", resp.status_code)
            raise RegistryError(f"Registration token request failed: {resp.status_code} {resp.text[:200]}")
        log.info("GitHub registration token received")
        token = self._json(resp).get("token")
        if not token:
            raise RegistryError("Registration token response carried no token")
        return token

    def delete_runner(self, runner_id: int) -> bool:
        """
        Delete one registration. Returns False when it was already gone.
        """
        resp = self._request("DELETE", f"{self.base_url}/{runner_id}")
        if resp.status_code == 404:
            log.info("Runner %s already removed", runner_id)
            return False
        if not resp.ok:
            raise RegistryError(f"Removing runner {runner_id} failed: {resp.status_code} {resp.text[:200]}")
        return True
