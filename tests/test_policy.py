from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from tabbroker.codec import build_request  # noqa: E402
from tabbroker.policy import (  # noqa: E402
    CommandDisabled,
    DestinationDenied,
    InvalidDestination,
    SecurityGate,
    SecurityPolicy,
    host_matches,
)


def _resolver(urls: dict[int, str | None]):
    async def _resolve(tab_id: int) -> str | None:
        return urls.get(tab_id)

    return _resolve


def test_host_matches_domain_and_subdomains() -> None:
    assert host_matches("example.com", "example.com")
    assert host_matches("mail.example.com", "example.com")
    assert not host_matches("notexample.com", "example.com")
    assert host_matches("bank.example.org", "https://bank.example.org/login")
    assert host_matches("a.internal.corp", "*.internal.corp")
    assert not host_matches("internal.corp", "*.internal.corp")


def test_command_allow_list_uses_tool_ids() -> None:
    gate = SecurityGate(SecurityPolicy(disabled_tools=frozenset({"execute-javascript-in-browser"})))

    assert not gate.is_command_allowed("execute-javascript")
    assert gate.is_command_allowed("get-tab-list")
    assert not gate.is_command_allowed("no-such-command")


def test_destination_checks() -> None:
    gate = SecurityGate(SecurityPolicy(denied_domains=("Example.COM",)))

    assert gate.is_destination_denied("https://www.example.com/a")
    assert not gate.is_destination_denied("https://example.net/")
    assert not gate.is_destination_denied("about:blank")
    assert gate.is_destination_denied("https://[::1")


def test_check_local_messages() -> None:
    gate = SecurityGate(
        SecurityPolicy(
            disabled_tools=frozenset({"close-browser-tabs"}),
            denied_domains=("blocked.test",),
        )
    )

    with pytest.raises(CommandDisabled, match="Command 'close-tabs' disabled by policy"):
        gate.check_local("close-tabs", {"tabIds": [1]})
    with pytest.raises(InvalidDestination, match="Invalid URL"):
        gate.check_local("open-tab", {"url": "ftp://files.test"})
    with pytest.raises(DestinationDenied, match="blocked.test"):
        gate.check_local("open-tab", {"url": "https://blocked.test/x"})
    gate.check_local("open-tab", {"url": "https://fine.test"})


def test_https_requirement_can_be_relaxed() -> None:
    gate = SecurityGate(SecurityPolicy(require_https=False))

    gate.check_local("open-tab", {"url": "http://localhost:3000"})


def test_tab_scoped_command_checks_live_url() -> None:
    gate = SecurityGate(SecurityPolicy(denied_domains=("bank.test",)))
    resolve = _resolver({1: "https://news.test/", 2: "https://online.bank.test/home"})

    async def _run() -> None:
        await gate.check(build_request("get-tab-content", "a", tabId=1), resolve)
        with pytest.raises(DestinationDenied):
            await gate.check(build_request("get-tab-content", "b", tabId=2), resolve)
        with pytest.raises(DestinationDenied, match="unavailable"):
            await gate.check(build_request("screenshot-website", "c", tabId=99), resolve)

    asyncio.run(_run())


def test_resolver_failure_is_denied() -> None:
    gate = SecurityGate()

    async def _broken(tab_id: int) -> str | None:
        raise RuntimeError("tab went away")

    async def _run() -> None:
        with pytest.raises(DestinationDenied, match="tab went away"):
            await gate.check(build_request("click-element", "a", tabId=1, x=1, y=2), _broken)

    asyncio.run(_run())


def test_non_tab_commands_skip_url_lookup() -> None:
    gate = SecurityGate(SecurityPolicy(denied_domains=("bank.test",)))
    calls: list[int] = []

    async def _resolve(tab_id: int) -> str | None:
        calls.append(tab_id)
        return None

    async def _run() -> None:
        await gate.check(build_request("get-tab-list", "a"), _resolve)
        await gate.check(build_request("close-tabs", "b", tabIds=[1, 2]), _resolve)

    asyncio.run(_run())
    assert calls == []


def test_open_bookmark_checks_bookmark_destination() -> None:
    gate = SecurityGate(SecurityPolicy(denied_domains=("bank.test",)))
    bookmarks = {"1": "https://bank.test/", "2": "https://docs.test/", "folder": None}

    async def _bookmark_url(bookmark_id: str) -> str | None:
        return bookmarks.get(bookmark_id)

    async def _run() -> None:
        resolve = _resolver({})
        with pytest.raises(DestinationDenied):
            await gate.check(build_request("open-bookmark", "a", bookmarkId="1"), resolve, _bookmark_url)
        await gate.check(build_request("open-bookmark", "b", bookmarkId="2"), resolve, _bookmark_url)
        await gate.check(build_request("open-bookmark", "c", bookmarkId="folder"), resolve, _bookmark_url)

    asyncio.run(_run())


def test_update_policy_applies_to_next_check() -> None:
    gate = SecurityGate()
    gate.check_local("get-tab-list", {})

    gate.update_policy(SecurityPolicy(disabled_tools=frozenset({"get-list-of-open-tabs"})))

    with pytest.raises(CommandDisabled):
        gate.check_local("get-tab-list", {})


def test_blank_tab_passes_empty_policy() -> None:
    gate = SecurityGate(SecurityPolicy())
    resolve = _resolver({1: "about:blank", 2: "data:text/html,hi", 3: None})

    async def _run() -> None:
        await gate.check(build_request("get-tab-content", "a", tabId=1), resolve)
        await gate.check(build_request("execute-javascript", "b", tabId=2, code="1"), resolve)
        with pytest.raises(DestinationDenied, match="unavailable"):
            await gate.check(build_request("get-tab-content", "c", tabId=3), resolve)

    asyncio.run(_run())
