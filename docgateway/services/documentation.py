"""Documentation orchestrator - one request, one terminal state.

Flow for a validated DiagnosticRequest:

    elevated? -> inline AccessEvent (failures absorbed)
    fingerprint -> ResponseCache.get
      hit  -> envelope (cacheServed=true) + UsageEvent(cache_served=True)
      miss -> generate -> enrich -> ResponseCache.put
              -> envelope (cacheServed=false) + UsageEvent(cache_served=False)
      generation failure -> UsageEvent(outcome=failed), re-raise

Structural validation happens before this point (DiagnosticRequest.build),
so a rejected request never touches the cache, the provider or the audit
trail.

Concurrent misses for the same fingerprint share one provider call when
coalescing is on. The shared call runs in its own task, so a caller that
disconnects does not cancel it and the cache is still populated.
"""

from __future__ import annotations

import asyncio
import secrets
import time
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

import structlog

from docgateway.audit.events import AccessEvent, UsageEvent, UsageOutcome
from docgateway.audit.sink import AuditSink
from docgateway.cache.response_cache import Artifact, ResponseCache
from docgateway.config import Settings
from docgateway.core.enrichment import Enrichment, enrich
from docgateway.core.errors import GenerationError
from docgateway.core.fingerprint import fingerprint
from docgateway.core.requests import DiagnosticRequest
from docgateway.generation.client import GenerationProvider

log = structlog.get_logger(__name__)


def new_audit_id() -> str:
    """Return a unique response audit id: ``aud_<epoch-ms hex>_<random hex>``."""
    return f"aud_{int(time.time() * 1000):x}_{secrets.token_hex(6)}"


@dataclass(frozen=True)
class RequestContext:
    """Where a request came from, as seen by the HTTP layer."""
    endpoint: str
    source_address: str
    elevated: bool = False
    request_id: str | None = None


@dataclass(frozen=True)
class DocumentationResult:
    content: str
    model: str
    enrichment: Enrichment
    cache_served: bool
    audit_id: str
    subsystem: str
    identifier_suffix: str
    elevated: bool
    caller_id: str
    authorized: bool
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_envelope(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": True,
            "content": self.content,
            "enrichment": self.enrichment.to_dict(),
        }
        if self.elevated:
            body["compliance"] = {
                "attribution": self.caller_id,
                "authorized": self.authorized,
                "tracked": True,
                "auditId": self.audit_id,
            }
        body["metadata"] = {
            "timestamp": self.timestamp.isoformat(),
            "subsystem": self.subsystem,
            "identifierSuffix": self.identifier_suffix,
            "cacheServed": self.cache_served,
            "model": self.model,
            "auditId": self.audit_id,
        }
        return body


class DocumentationOrchestrator:
    """Serves documentation requests from cache or the generation provider."""

    def __init__(
        self,
        settings: Settings,
        *,
        cache: ResponseCache,
        generator: GenerationProvider,
        audit_sink: AuditSink,
    ) -> None:
        self._cache = cache
        self._generator = generator
        self._audit = audit_sink
        self._notes_prefix_chars = settings.fingerprint_notes_prefix_chars
        self._ttl = settings.cache_ttl_seconds
        self._coalesce = settings.generation_coalesce
        self._inflight: dict[str, asyncio.Task[Artifact]] = {}

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def handle(self, request: DiagnosticRequest, context: RequestContext) -> DocumentationResult:
        """Run one request through the cache / generation / audit pipeline.

        Raises:
            GenerationError: the provider failed (after the failed usage
                event has been emitted)
        """
        audit_id = new_audit_id()
        log_ctx = {
            "audit_id": audit_id,
            "subsystem": request.subsystem,
            "identifier_suffix": request.identifier_suffix,
            "elevated": context.elevated,
        }

        if context.elevated:
            await self._audit.emit_now(
                AccessEvent(
                    endpoint=context.endpoint,
                    source_address=context.source_address,
                    authorized=request.authorized,
                    caller_id=request.caller_id,
                    metadata={
                        "auditId": audit_id,
                        "subsystem": request.subsystem,
                        "requestId": context.request_id,
                    },
                )
            )

        key = fingerprint(request, notes_prefix_chars=self._notes_prefix_chars)
        entry, found = await self._cache.get(key)

        if found and entry is not None:
            artifact = entry.artifact
            cache_served = True
        else:
            try:
                artifact, cache_served = await self._generate(key, request)
            except GenerationError as exc:
                log.warning("documentation.generation_failed", category=exc.category, **log_ctx)
                self._audit.emit(
                    UsageEvent.from_request(
                        request,
                        cache_served=False,
                        outcome=UsageOutcome.FAILED,
                        metadata={"auditId": audit_id, "error": exc.category},
                    )
                )
                raise

        self._audit.emit(
            UsageEvent.from_request(
                request,
                cache_served=cache_served,
                metadata={"auditId": audit_id, "model": artifact.model},
            )
        )
        log.info("documentation.served", cache_served=cache_served, model=artifact.model, **log_ctx)

        return DocumentationResult(
            content=artifact.content,
            model=artifact.model,
            enrichment=replace(artifact.enrichment, diagnostic_codes=request.diagnostic_codes),
            cache_served=cache_served,
            audit_id=audit_id,
            subsystem=request.subsystem,
            identifier_suffix=request.identifier_suffix,
            elevated=context.elevated,
            caller_id=request.caller_id,
            authorized=request.authorized,
        )

    async def _generate(self, key: str, request: DiagnosticRequest) -> tuple[Artifact, bool]:
        """Return ``(artifact, cache_served)`` for a cache miss.

        A follower joining an in-flight call for the same fingerprint did not
        cause a provider call itself, so its response counts as cache-served.
        """
        if not self._coalesce:
            return await self._generate_and_store(key, request), False

        task = self._inflight.get(key)
        if task is not None:
            log.debug("documentation.coalesced", key=key)
            return await asyncio.shield(task), True

        task = asyncio.create_task(self._generate_and_store(key, request))
        self._inflight[key] = task
        task.add_done_callback(lambda t: self._release(key, t))
        return await asyncio.shield(task), False

    def _release(self, key: str, task: asyncio.Task[Artifact]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        # Mark the exception retrieved; awaiting callers re-raise it themselves
        if not task.cancelled():
            task.exception()

    async def _generate_and_store(self, key: str, request: DiagnosticRequest) -> Artifact:
        generated = await self._generator.generate(request)
        artifact = Artifact(
            content=generated.content,
            model=generated.model,
            # Codes are not part of the cache key; each response reports its own
            enrichment=enrich(request.subsystem),
        )
        await self._cache.put(key, artifact, ttl=self._ttl)
        return artifact
