"""Local daemon and CLI for driving iOS simulators through WebDriverAgent."""

from ios_agent.logging_config import configure_logging
from ios_agent.session import SessionController, SessionState
from ios_agent.snapshot import RefStore, Snapshot, parse_wda_source, resolve_ref
from ios_agent.wda_client import WDAClient

configure_logging()

__all__ = [
    "configure_logging",
    "RefStore",
    "SessionController",
    "SessionState",
    "Snapshot",
    "WDAClient",
    "parse_wda_source",
    "resolve_ref",
]
