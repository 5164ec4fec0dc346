"""Sync handler registry.

WHAT:
    Maps a canonical provider key to a synchronization handler, with two
    independent tables (real and mock) and a deterministic fallback between
    them.

WHY:
    - Integrations without credentials (demo tenants, fresh sign-ups) still
      produce schema-valid data through the mock handlers
    - Providers that only have one implementation still dispatch: a missing
      handler in the decided mode falls back to the other mode
    - The registry is an explicit value passed to the scheduler, worker and
      pipeline, so tests substitute it instead of patching module globals

MODE DECISION (pure, no I/O):
    mock if the integration config sets `mockMode: true`, if the process-wide
    force-mock flag is on, or if the credentials blob has no non-empty field.
    Otherwise real.

REFERENCES:
    - adsync/services/mock_providers.py (default mock handlers)
    - adsync/workers/ingestion_worker.py (dispatch consumer)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Protocol, Tuple, Union

from sqlalchemy.orm import Session

from adsync.models import Integration, SyncModeEnum
from adsync.services.errors import NoSyncHandlerError

logger = logging.getLogger(__name__)


PROVIDER_ALIASES: Dict[str, str] = {
    "googleads": "google_ads",
    "lineads": "line_ads",
    "line": "line_ads",
    "gsc": "google_search_console",
    "searchconsole": "google_search_console",
}

SUCCESS_STATUSES = frozenset({"success", "ok"})


class SyncHandler(Protocol):
    """Capability every provider implements, real or mock.

    Handlers write their own campaign/metric rows through `db` and return a
    result dict with at least a `status` discriminator (success/ok, error,
    partial) plus provider-specific counts and an optional `cursor`.
    """

    def __call__(self, db: Session, integration: Integration) -> Dict[str, Any]:
        ...


@dataclass
class DispatchResult:
    provider: str
    mode: SyncModeEnum
    result: Dict[str, Any]


# =============================================================================
# PURE HELPERS
# =============================================================================

def normalize_provider_key(raw: Optional[str]) -> str:
    """Map provider aliases to their canonical key (trimmed, lowercase)."""
    key = (raw or "").strip().lower()
    return PROVIDER_ALIASES.get(key, key)


def parse_json(value: Any, fallback: Any) -> Any:
    """Decode a JSON blob that may be stored as text or already decoded."""
    if not value:
        return fallback
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return fallback
    return value


def has_any_credential(creds: Any) -> bool:
    """True if the credentials blob contains at least one non-empty field."""
    if not creds:
        return False
    if not isinstance(creds, Mapping):
        return bool(str(creds).strip())
    for value in creds.values():
        if value is None:
            continue
        if isinstance(value, str):
            if value.strip():
                return True
        elif isinstance(value, (Mapping, list, tuple)):
            if len(value) > 0:
                return True
        else:
            return True
    return False


def decide_mode(integration: Integration, force_mock: bool = False) -> SyncModeEnum:
    config = parse_json(integration.config, {})
    if isinstance(config, Mapping) and config.get("mockMode") is True:
        return SyncModeEnum.mock
    if force_mock:
        return SyncModeEnum.mock

    creds = parse_json(integration.credentials, {})
    return SyncModeEnum.real if has_any_credential(creds) else SyncModeEnum.mock


def result_status(result: Any) -> Optional[str]:
    if isinstance(result, Mapping):
        status = result.get("status")
        return str(status).lower() if status is not None else None
    return None


def is_success_result(result: Any) -> bool:
    """Only success/ok count as success; error, partial and anything else do not."""
    return result_status(result) in SUCCESS_STATUSES


def result_error_message(result: Any) -> str:
    if isinstance(result, Mapping):
        message = result.get("message") or result.get("error")
        if message:
            return str(message)
    return f"Sync returned status {result_status(result)!r}"


def _opposite(mode: SyncModeEnum) -> SyncModeEnum:
    return SyncModeEnum.real if mode == SyncModeEnum.mock else SyncModeEnum.mock


# =============================================================================
# REGISTRY
# =============================================================================

HandlerSpec = Tuple[str, Union[str, SyncModeEnum], SyncHandler]


class SyncHandlerRegistry:
    """Two parallel provider -> handler tables plus the fallback rule.

    Usage:
        registry = SyncHandlerRegistry([
            ("google_ads", "real", google_ads_sync),
            ("google_ads", "mock", mock_google_ads_sync),
        ])
        dispatched = registry.dispatch(db, integration)
        dispatched.mode  # SyncModeEnum.real or SyncModeEnum.mock
    """

    def __init__(self, handlers: Iterable[HandlerSpec] = (), force_mock: bool = False):
        self.force_mock = force_mock
        self._handlers: Dict[SyncModeEnum, Dict[str, SyncHandler]] = {
            SyncModeEnum.real: {},
            SyncModeEnum.mock: {},
        }
        for provider, mode, handler in handlers:
            self.register(provider, mode, handler)

    def register(self, provider: str, mode: Union[str, SyncModeEnum], handler: SyncHandler) -> None:
        key = normalize_provider_key(provider)
        if not key:
            raise ValueError("Provider key must not be empty")
        self._handlers[SyncModeEnum(mode)][key] = handler

    def resolve(self, provider_raw: str, mode: Union[str, SyncModeEnum]) -> Optional[SyncHandler]:
        return self._handlers[SyncModeEnum(mode)].get(normalize_provider_key(provider_raw))

    def decide_mode(self, integration: Integration) -> SyncModeEnum:
        return decide_mode(integration, force_mock=self.force_mock)

    def dispatch(
        self,
        db: Session,
        integration: Integration,
        forced_mode: Optional[Union[str, SyncModeEnum]] = None,
    ) -> DispatchResult:
        """Run the integration's handler, falling back to the opposite mode.

        Raises:
            NoSyncHandlerError: neither mode has a handler for the provider.
            Exception: whatever the handler raises.
        """
        provider = normalize_provider_key(integration.provider)
        mode = SyncModeEnum(forced_mode) if forced_mode else self.decide_mode(integration)

        handler = self.resolve(provider, mode)
        if handler is None:
            fallback_mode = _opposite(mode)
            handler = self.resolve(provider, fallback_mode)
            if handler is None:
                raise NoSyncHandlerError(provider)
            logger.info(
                "[REGISTRY] No %s handler for %s, falling back to %s",
                mode.value, provider, fallback_mode.value,
            )
            mode = fallback_mode

        result = handler(db, integration)
        return DispatchResult(provider=provider, mode=mode, result=result)

    def known_providers(self) -> List[str]:
        keys = set(self._handlers[SyncModeEnum.real]) | set(self._handlers[SyncModeEnum.mock])
        return sorted(keys)


def build_default_registry(force_mock: bool = False) -> SyncHandlerRegistry:
    """Registry populated with the mock handler of every catalog provider.

    Real handlers are registered by deployments that ship provider API
    clients; until then real-mode dispatches fall back to the mock handlers.
    """
    from adsync.services.mock_providers import default_mock_handlers

    registry = SyncHandlerRegistry(default_mock_handlers(), force_mock=force_mock)
    logger.info(
        "[REGISTRY] Default registry built: providers=%s force_mock=%s",
        ",".join(registry.known_providers()), force_mock,
    )
    return registry
