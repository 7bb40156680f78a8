from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from dotenv import dotenv_values, find_dotenv, load_dotenv

from tabbroker.policy import SecurityGate, SecurityPolicy

log = logging.getLogger(__name__)

WS_DEFAULT_PORT = 8089
DEFAULT_SCREENSHOT_DIR = Path.home() / "Pictures" / "Browser-Screenshots"
POLICY_VARS = ("BROKER_DISABLED_TOOLS", "BROKER_DENIED_DOMAINS", "BROKER_REQUIRE_HTTPS")

Env = Mapping[str, str | None]


def _env_int(name: str, default: int, *, minimum: int = 0) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("Ignoring invalid %s=%r", name, raw)
        return default
    return max(value, minimum)


def _env_float(name: str, default: float, *, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        log.warning("Ignoring invalid %s=%r", name, raw)
        return default
    return max(value, minimum)


def _env_bool(name: str, default: bool, env: Env | None = None) -> bool:
    raw = (os.environ if env is None else env).get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(name: str, env: Env | None = None) -> tuple[str, ...]:
    raw = (os.environ if env is None else env).get(name) or ""
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_ports(port: int) -> tuple[int, ...]:
    ports: list[int] = []
    for item in _env_list("EXTENSION_PORTS"):
        try:
            ports.append(int(item))
        except ValueError:
            log.warning("Ignoring invalid port %r in EXTENSION_PORTS", item)
    return tuple(ports) or (port,)


def policy_from_env(env: Env | None = None) -> SecurityPolicy:
    return SecurityPolicy(
        disabled_tools=frozenset(_env_list("BROKER_DISABLED_TOOLS", env)),
        denied_domains=_env_list("BROKER_DENIED_DOMAINS", env),
        require_https=_env_bool("BROKER_REQUIRE_HTTPS", True, env),
    )


@dataclass(frozen=True, slots=True)
class BrokerConfig:
    port: int = WS_DEFAULT_PORT
    executor_ports: tuple[int, ...] = (WS_DEFAULT_PORT,)
    host: str = "localhost"
    response_timeout_s: float = 0.0
    disabled_tools: frozenset[str] = field(default_factory=frozenset)
    denied_domains: tuple[str, ...] = ()
    require_https: bool = True
    audit_db: Path = Path("data") / "audit.sqlite"
    audit_max_entries: int = 1000
    reconnect_interval_s: float = 2.0
    max_connect_ticks: int = 2
    screenshot_dir: Path = DEFAULT_SCREENSHOT_DIR
    browser_mode: str = "launch"
    cdp_url: str | None = None
    headless: bool = True
    bookmarks_path: Path | None = None
    log_level: str = "INFO"
    log_file: str | None = "tabbroker.log"

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "BrokerConfig":
        if dotenv:
            load_dotenv(override=False)
        port = _env_int("EXTENSION_PORT", WS_DEFAULT_PORT, minimum=0)
        # Unless running in a container, bind to localhost only
        host = "0.0.0.0" if os.getenv("CONTAINERIZED") else "localhost"
        bookmarks = os.getenv("BROKER_BOOKMARKS_PATH")
        screenshot_dir = os.getenv("BROKER_SCREENSHOT_DIR")
        browser_mode = (os.getenv("BROKER_BROWSER_MODE") or "launch").strip().lower()
        if browser_mode not in {"launch", "cdp"}:
            log.warning("Unknown BROKER_BROWSER_MODE=%r, using launch", browser_mode)
            browser_mode = "launch"
        policy = policy_from_env()
        return cls(
            port=port,
            executor_ports=_env_ports(port),
            host=host,
            response_timeout_s=_env_float("BROKER_RESPONSE_TIMEOUT_S", 0.0),
            disabled_tools=policy.disabled_tools,
            denied_domains=policy.denied_domains,
            require_https=policy.require_https,
            audit_db=Path(os.getenv("BROKER_AUDIT_DB") or Path("data") / "audit.sqlite"),
            audit_max_entries=_env_int("BROKER_AUDIT_MAX_ENTRIES", 1000, minimum=1),
            reconnect_interval_s=_env_float("BROKER_RECONNECT_INTERVAL_S", 2.0, minimum=0.1),
            max_connect_ticks=_env_int("BROKER_MAX_CONNECT_TICKS", 2, minimum=1),
            screenshot_dir=Path(screenshot_dir).expanduser() if screenshot_dir else DEFAULT_SCREENSHOT_DIR,
            browser_mode=browser_mode,
            cdp_url=os.getenv("BROKER_CDP_URL") or None,
            headless=_env_bool("BROKER_HEADLESS", True),
            bookmarks_path=Path(bookmarks).expanduser() if bookmarks else None,
            log_level=(os.getenv("BROKER_LOG_LEVEL") or "INFO").upper(),
            log_file=os.getenv("BROKER_LOG_FILE", "tabbroker.log") or None,
        )

    def security_policy(self) -> SecurityPolicy:
        return SecurityPolicy(
            disabled_tools=self.disabled_tools,
            denied_domains=self.denied_domains,
            require_https=self.require_https,
        )


class PolicyWatcher:
    """Re-reads the policy variables from ``.env`` into a live gate.

    ``.env`` is read fresh on every reload. A line deleted from it falls
    back to the value set outside ``.env``, or to the default.
    """

    def __init__(self, gate: SecurityGate, *, dotenv_path: str | None = None) -> None:
        self._gate = gate
        self._dotenv_path = dotenv_path
        from_file = self._read_dotenv()
        self._process_env = {
            name: os.environ[name]
            for name in POLICY_VARS
            if name in os.environ and name not in from_file
        }

    def _read_dotenv(self) -> dict[str, str | None]:
        path = self._dotenv_path or find_dotenv()
        if not path:
            return {}
        return dict(dotenv_values(path))

    def reload(self) -> SecurityPolicy:
        env = {**self._process_env, **self._read_dotenv()}
        policy = policy_from_env(env)
        self._gate.update_policy(policy)
        return policy
