from __future__ import annotations

import fnmatch
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable
from urllib.parse import urlsplit

from tabbroker.errors import BrokerError
from tabbroker.models import COMMAND_SPECS, COMMAND_TO_TOOL_ID, Request

log = logging.getLogger(__name__)

TabUrlResolver = Callable[[int], Awaitable[str | None]]
BookmarkUrlResolver = Callable[[str], Awaitable[str | None]]


class PolicyDenied(BrokerError):
    pass


class CommandDisabled(PolicyDenied):
    pass


class DestinationDenied(PolicyDenied):
    pass


class InvalidDestination(PolicyDenied):
    pass


@dataclass(frozen=True, slots=True)
class SecurityPolicy:
    disabled_tools: frozenset[str] = field(default_factory=frozenset)
    denied_domains: tuple[str, ...] = ()
    require_https: bool = True


def _normalize_host(host: str) -> str:
    return host.strip().lower().rstrip(".")


def _entry_host(entry: str) -> str:
    entry = entry.strip()
    if "://" in entry:
        return _normalize_host(urlsplit(entry).hostname or "")
    return _normalize_host(entry.split("/", 1)[0])


def host_matches(host: str, entry: str) -> bool:
    pattern = _entry_host(entry)
    if not pattern:
        return False
    if any(ch in pattern for ch in "*?["):
        return fnmatch.fnmatchcase(host, pattern)
    return host == pattern or host.endswith("." + pattern)


class SecurityGate:
    """Command allow-list and destination deny-list checks.

    The policy is an immutable snapshot; ``update_policy`` swaps the
    reference, and every check reads it once.
    """

    def __init__(self, policy: SecurityPolicy | None = None) -> None:
        self._policy = policy or SecurityPolicy()

    @property
    def policy(self) -> SecurityPolicy:
        return self._policy

    def update_policy(self, policy: SecurityPolicy) -> None:
        self._policy = policy
        log.info(
            "Security policy updated: %d disabled tool(s), %d denied domain(s)",
            len(policy.disabled_tools),
            len(policy.denied_domains),
        )

    def is_command_allowed(self, command: str, policy: SecurityPolicy | None = None) -> bool:
        policy = policy or self._policy
        tool_id = COMMAND_TO_TOOL_ID.get(command)
        if tool_id is None:
            return False
        return tool_id not in policy.disabled_tools

    def is_destination_denied(self, url: str, policy: SecurityPolicy | None = None) -> bool:
        policy = policy or self._policy
        try:
            host = urlsplit(url).hostname
        except ValueError:
            return True
        if not host:
            # about:blank, data: and file: pages have no host to match.
            return False
        host = _normalize_host(host)
        return any(host_matches(host, entry) for entry in policy.denied_domains)

    def _check_url(self, url: str, policy: SecurityPolicy) -> None:
        if self.is_destination_denied(url, policy):
            host = ""
            try:
                host = urlsplit(url).hostname or ""
            except ValueError:
                pass
            raise DestinationDenied(f"destination denied: {host or url}")

    def _check_command(self, command: str, fields: dict[str, Any], policy: SecurityPolicy) -> None:
        if not self.is_command_allowed(command, policy):
            raise CommandDisabled(f"Command '{command}' disabled by policy")
        spec = COMMAND_SPECS[command]
        if spec.targets_url:
            url = fields.get("url")
            if not isinstance(url, str):
                raise InvalidDestination("Invalid URL")
            if policy.require_https and not url.startswith("https://"):
                raise InvalidDestination("Invalid URL")
            self._check_url(url, policy)

    def check_local(self, command: str, fields: dict[str, Any]) -> None:
        """Checks that need no browser state: the allow-list and explicit URLs."""
        policy = self._policy
        try:
            self._check_command(command, fields, policy)
        except PolicyDenied:
            raise
        except Exception as exc:
            log.exception("Policy evaluation failed for %s", command)
            raise DestinationDenied(f"destination denied: policy check failed ({exc})") from exc

    async def check(
        self,
        request: Request,
        resolve_tab_url: TabUrlResolver,
        resolve_bookmark_url: BookmarkUrlResolver | None = None,
    ) -> None:
        """Full check, resolving the live URL of the targeted tab or bookmark."""
        policy = self._policy
        try:
            self._check_command(request.command, request.fields, policy)
            if request.spec.targets_tab:
                url = await resolve_tab_url(request.fields["tabId"])
                if not url:
                    raise DestinationDenied("destination denied: tab URL unavailable")
                self._check_url(url, policy)
            elif request.command == "open-bookmark" and resolve_bookmark_url is not None:
                # No URL means a folder or a missing bookmark; nothing is opened.
                url = await resolve_bookmark_url(request.fields["bookmarkId"])
                if url:
                    self._check_url(url, policy)
        except PolicyDenied:
            raise
        except Exception as exc:
            log.warning("Policy evaluation failed for %s: %r", request.command, exc)
            raise DestinationDenied(
                f"destination denied: could not resolve destination ({exc})"
            ) from exc
