"""Billing ledger.

Every billable operation is charged exactly once per idempotency key, before
any work starts. The commit is an atomic set-if-absent on the shared cache
backend (``SET NX`` on Redis), so concurrent duplicates cannot both commit.
Validation and deployment charges are never refunded. A query charge is
voided when an unexpected fault stops the work it paid for; ``void`` is the
only reversal.

The ledger also keeps the final response for each idempotency key so that a
duplicate request can be answered by replaying it instead of doing the work
again.
"""

import hashlib
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from pydantic import ValidationError

from ..core.cache_backend import CacheBackend, get_cache_backend
from ..core.config import Settings, get_settings_instance
from ..core.logging import get_logger
from ..schemas.plugin import BillingEvent, BillingEventName, utcnow

logger = get_logger(__name__)

LEDGER_KEY_PREFIX = "mcpgate:ledger:"
OUTCOME_KEY_PREFIX = "mcpgate:outcome:"
VOIDED_KEY_PREFIX = "mcpgate:voided:"


class ChargeStatus(str, Enum):
    COMMITTED = "committed"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class ChargeOutcome:
    """Result of a charge attempt. ``event`` is the persisted charge for the key."""

    status: ChargeStatus
    event: BillingEvent

    @property
    def committed(self) -> bool:
        return self.status == ChargeStatus.COMMITTED


class LedgerCorruptionError(Exception):
    """Raised when a stored ledger entry cannot be read back."""


class BillingLedger:
    """Idempotent per-event charging over the shared cache backend."""

    def __init__(self, backend: CacheBackend | None = None, settings: Settings | None = None):
        self._backend = backend
        self.settings = settings or get_settings_instance()

    async def _get_backend(self) -> CacheBackend:
        if self._backend is None:
            self._backend = await get_cache_backend()
        return self._backend

    def price_for(self, event_name: BillingEventName) -> Decimal:
        match event_name:
            case BillingEventName.BASIC_QUERY:
                return self.settings.price_basic_query
            case BillingEventName.DETAIL_LOOKUP:
                return self.settings.price_detail_lookup
            case BillingEventName.VALIDATION:
                return self.settings.price_validation
            case BillingEventName.DEPLOYMENT:
                return self.settings.price_deployment

    @staticmethod
    def _digest(idempotency_key: str, scope: str) -> str:
        return hashlib.sha256(f"{scope}\x00{idempotency_key}".encode()).hexdigest()

    def ledger_key(self, idempotency_key: str, scope: str = "") -> str:
        return LEDGER_KEY_PREFIX + self._digest(idempotency_key, scope)

    def outcome_key(self, idempotency_key: str, scope: str = "") -> str:
        return OUTCOME_KEY_PREFIX + self._digest(idempotency_key, scope)

    def voided_key(self, idempotency_key: str, scope: str = "") -> str:
        return VOIDED_KEY_PREFIX + self._digest(idempotency_key, scope)

    async def charge(self, event_name: BillingEventName, idempotency_key: str, scope: str = "") -> ChargeOutcome:
        """Commit a charge unless one already exists for the key.

        Raises:
            CacheError: The ledger store is unavailable; nothing was charged.
        """
        backend = await self._get_backend()
        key = self.ledger_key(idempotency_key, scope)
        event = BillingEvent(
            event_name=event_name,
            event_value=self.price_for(event_name),
            idempotency_key=idempotency_key,
        )

        if await backend.set_if_absent(key, event.model_dump_json(by_alias=True)):
            logger.info(
                "Charge committed",
                extra={"billing_event": event_name.value, "amount": str(event.event_value)},
            )
            return ChargeOutcome(ChargeStatus.COMMITTED, event)

        existing = await self._load(backend, key)
        logger.info("Duplicate charge suppressed", extra={"billing_event": existing.event_name.value})
        return ChargeOutcome(ChargeStatus.DUPLICATE, existing)

    async def _load(self, backend: CacheBackend, key: str) -> BillingEvent:
        raw = await backend.get(key)
        if raw is None:
            raise LedgerCorruptionError("ledger entry disappeared")
        try:
            return BillingEvent.model_validate_json(raw)
        except ValidationError as e:
            raise LedgerCorruptionError("ledger entry is unreadable") from e

    async def get_event(self, idempotency_key: str, scope: str = "") -> BillingEvent | None:
        backend = await self._get_backend()
        key = self.ledger_key(idempotency_key, scope)
        if not await backend.exists(key):
            return None
        return await self._load(backend, key)

    async def void(self, idempotency_key: str, scope: str = "") -> BillingEvent | None:
        """Reverse a charge. Returns the voided event, or None if no charge exists.

        The voided event moves to an audit key and the idempotency key is
        released together with any stored outcome, so a retry with the same
        key is charged and executed afresh.
        """
        backend = await self._get_backend()
        key = self.ledger_key(idempotency_key, scope)
        if not await backend.exists(key):
            return None
        event = await self._load(backend, key)
        voided = event.model_copy(update={"voided_at": utcnow()})
        await backend.set(self.voided_key(idempotency_key, scope), voided.model_dump_json(by_alias=True))
        await backend.delete(self.outcome_key(idempotency_key, scope))
        await backend.delete(key)
        logger.info("Charge voided", extra={"billing_event": event.event_name.value})
        return voided

    async def get_voided(self, idempotency_key: str, scope: str = "") -> BillingEvent | None:
        backend = await self._get_backend()
        raw = await backend.get(self.voided_key(idempotency_key, scope))
        return BillingEvent.model_validate_json(raw) if raw is not None else None

    async def record_outcome(self, idempotency_key: str, outcome_json: str, scope: str = "") -> None:
        """Store the final response for replay to duplicates."""
        backend = await self._get_backend()
        await backend.set(
            self.outcome_key(idempotency_key, scope),
            outcome_json,
            ttl_seconds=self.settings.billing_outcome_retention,
        )

    async def get_outcome(self, idempotency_key: str, scope: str = "") -> str | None:
        backend = await self._get_backend()
        return await backend.get(self.outcome_key(idempotency_key, scope))
