"""
readiness.py — poll an instance's health surface until the gateway answers.

Each attempt tries the public domain over HTTPS first (Caddy in front of the
gateway), then the raw gateway port on the instance IP. The first 2xx wins.
What happens when every attempt fails is a named policy: report the instance
as ready anyway (the default, the gateway usually comes up shortly after) or
raise ReadinessTimeout.
"""

import logging
from dataclasses import dataclass
from enum import Enum

import requests

from .deadline import Deadline, ensure
from .errors import InvalidRequest, ReadinessTimeout

log = logging.getLogger(__name__)


class PollTimeoutPolicy(str, Enum):
    ASSUME_READY = "assume_ready"
    FAIL = "fail"

    @classmethod
    def parse(cls, value) -> "PollTimeoutPolicy":
        try:
            return cls(value)
        except ValueError:
            raise InvalidRequest(
                f"Unknown poll timeout policy {value!r}; use assume_ready or fail"
            ) from None


@dataclass
class ReadinessResult:
    ready: bool
    timed_out: bool
    attempts: int
    url: str | None = None


def health_urls(domain: str | None, ip: str | None, port: int = 3000) -> list[str]:
    urls = []
    if domain:
        urls.append(f"https://{domain}/health")
    if ip:
        urls.append(f"http://{ip}:{port}/health")
    return urls


class ReadinessProbe:
    def __init__(
        self,
        attempts: int = 90,
        interval: float = 3.0,
        timeout: float = 5.0,
        port: int = 3000,
        policy: PollTimeoutPolicy = PollTimeoutPolicy.ASSUME_READY,
        session: requests.Session | None = None,
    ):
        self.attempts = attempts
        self.interval = interval
        self.timeout = timeout
        self.port = port
        self.policy = PollTimeoutPolicy.parse(policy)
        self.session = session or requests.Session()

    def probe_once(self, urls: list[str], token: str | None = None) -> str | None:
        """First URL that answers 2xx, or None."""
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        for url in urls:
            try:
                r = self.session.get(url, headers=headers, timeout=self.timeout)
            except requests.RequestException as exc:
                log.debug(f"  {url} → {exc.__class__.__name__}")
                continue
            if 200 <= r.status_code < 300:
                return url
            log.debug(f"  {url} → HTTP {r.status_code}")
        return None

    def wait_until_ready(self, domain: str | None, ip: str | None, token: str | None = None,
                         deadline: Deadline | None = None) -> ReadinessResult:
        deadline = ensure(deadline)
        urls = health_urls(domain, ip, self.port)
        if not urls:
            raise InvalidRequest("Readiness check needs a domain or an IP")
        log.info(f"  Polling {' / '.join(urls)} (up to {self.attempts} attempts)")
        for attempt in range(1, self.attempts + 1):
            deadline.check("readiness polling")
            url = self.probe_once(urls, token)
            if url:
                log.info(f"  Health check PASSED via {url} (attempt {attempt})")
                return ReadinessResult(ready=True, timed_out=False, attempts=attempt, url=url)
            if attempt < self.attempts:
                deadline.sleep(self.interval)

        total = self.attempts * self.interval
        if self.policy is PollTimeoutPolicy.FAIL:
            raise ReadinessTimeout(f"Instance not healthy after {self.attempts} attempts (~{total:g}s)")
        log.warning(
            f"  Health check did not pass after {self.attempts} attempts (~{total:g}s), "
            f"assuming ready - gateway may still be starting"
        )
        return ReadinessResult(ready=True, timed_out=True, attempts=self.attempts)
