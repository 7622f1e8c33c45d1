"""Latest validation result per plugin slug, used as the deploy precondition."""

from pydantic import ValidationError

from ..core.cache_backend import CacheBackend, get_cache_backend
from ..core.config import Settings, get_settings_instance
from ..core.logging import get_logger
from ..schemas.plugin import ValidationResult, ValidationStatus

logger = get_logger(__name__)

RECORD_KEY_PREFIX = "mcpgate:validation:"


class ValidationRecordStore:
    def __init__(self, backend: CacheBackend | None = None, settings: Settings | None = None):
        self._backend = backend
        self.settings = settings or get_settings_instance()

    async def _get_backend(self) -> CacheBackend:
        if self._backend is None:
            self._backend = await get_cache_backend()
        return self._backend

    @staticmethod
    def _key(slug: str) -> str:
        return RECORD_KEY_PREFIX + slug.strip().lower()

    async def save(self, result: ValidationResult) -> None:
        """Keep ``result`` as the latest for its slug. ``error`` results are not retained."""
        if result.status == ValidationStatus.ERROR:
            return
        backend = await self._get_backend()
        await backend.set(
            self._key(result.slug),
            result.model_dump_json(by_alias=True),
            ttl_seconds=self.settings.validation_record_retention,
        )

    async def latest(self, slug: str) -> ValidationResult | None:
        backend = await self._get_backend()
        raw = await backend.get(self._key(slug))
        if raw is None:
            return None
        try:
            return ValidationResult.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding unreadable validation record", extra={"slug": slug})
            return None
