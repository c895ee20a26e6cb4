"""Maps recording file names to show/season/episode identities."""

from __future__ import annotations

from threading import Event
from typing import List, Optional

from dvr_manager.core.cache import IdentityCache
from dvr_manager.core.errors import (
    MetadataServiceError,
    ResolutionAmbiguous,
    ResolutionUnresolvable,
)
from dvr_manager.core.logger import setup_logger
from dvr_manager.core.models import MediaIdentity, MoveOutcome, MoveRecord, RecordingFile
from dvr_manager.core.naming import filename_fingerprint
from dvr_manager.metadata_providers import LookupQuery, MetadataProvider
from dvr_manager.recordings.audit import AuditTrail
from dvr_manager.recordings.parsing import guess_show_name, parse_recording_name

logger = setup_logger(__name__)


def _describe(identity: MediaIdentity) -> str:
    if identity.episode is not None:
        label = f"{identity.show} S{identity.season:02d}E{identity.episode:02d}"
    elif identity.air_date is not None:
        label = f"{identity.show} {identity.air_date.isoformat()}"
    else:
        label = f"{identity.show} S{identity.season:02d}"
    return f"{label} [{identity.source} {identity.confidence:.2f}]"


class MetadataResolver:
    """Resolves recordings using local name patterns first, then a provider.

    The cache is injected so that its lifetime is owned by the caller (the
    orchestrator keeps one per process). Thresholds can be changed at runtime
    through ``configure()``.
    """

    def __init__(
        self,
        cache: IdentityCache,
        provider: Optional[MetadataProvider] = None,
        audit: Optional[AuditTrail] = None,
        confidence_threshold: float = 0.7,
        min_confidence: float = 0.5,
    ):
        self.cache = cache
        self.provider = provider
        self.audit = audit
        self.confidence_threshold = confidence_threshold
        self.min_confidence = min_confidence

    def configure(
        self,
        provider: Optional[MetadataProvider],
        confidence_threshold: float,
        min_confidence: float,
    ) -> None:
        self.provider = provider
        self.confidence_threshold = confidence_threshold
        self.min_confidence = min_confidence

    def resolve(self, recording: RecordingFile, cancel_flag: Optional[Event] = None) -> MediaIdentity:
        """Return the identity of ``recording`` or raise ResolutionUnresolvable.

        Raises:
            ResolutionUnresolvable: no candidate reached the minimum confidence,
                or the provider failed while the local match was too weak.
            OperationCancelled: the lookup was cancelled through ``cancel_flag``.
        """
        fingerprint = filename_fingerprint(recording.name)

        cached = self.cache.get(fingerprint)
        if cached is not None:
            logger.debug(f"{recording.name}: cache hit -> {_describe(cached)}")
            return cached

        local = parse_recording_name(recording.name)
        best_local = local[0] if local else None

        if best_local and best_local.confidence >= self.confidence_threshold:
            identity = self._choose(recording, local)
            return self.cache.put(fingerprint, identity)

        candidates = list(local)
        if self.provider is not None:
            query = self._build_query(recording, best_local)
            try:
                remote = self.provider.identify(query, cancel_flag)
            except MetadataServiceError as e:
                logger.warning(f"{recording.name}: metadata lookup failed: {e}")
                raise ResolutionUnresolvable(
                    f"Metadata lookup failed and local match is too weak "
                    f"({best_local.confidence if best_local else 0:.2f}): {e}"
                ) from e
            candidates.extend(remote)

        candidates = [c for c in candidates if c.confidence >= self.min_confidence]
        if not candidates:
            raise ResolutionUnresolvable(f"No identity above {self.min_confidence:.2f} for {recording.name}")

        identity = self._choose(recording, candidates)
        return self.cache.put(fingerprint, identity)

    @staticmethod
    def _build_query(recording: RecordingFile, best_local: Optional[MediaIdentity]) -> LookupQuery:
        if best_local:
            return LookupQuery(
                filename=recording.name,
                show=best_local.show,
                season=best_local.season,
                episode=best_local.episode,
                air_date=best_local.air_date,
            )
        return LookupQuery(filename=recording.name, show=guess_show_name(recording.name))

    def _choose(self, recording: RecordingFile, candidates: List[MediaIdentity]) -> MediaIdentity:
        """Pick the highest confidence candidate; record a tie between distinct targets."""
        # Stable sort keeps local candidates ahead of provider ones on equal confidence
        ranked = sorted(candidates, key=lambda c: c.confidence, reverse=True)
        best = ranked[0]

        rivals = [c for c in ranked[1:] if c.confidence == best.confidence and not c.same_target(best)]
        if rivals:
            ambiguity = ResolutionAmbiguous(
                f"{len(rivals) + 1} candidates at confidence {best.confidence:.2f}; "
                f"chose {_describe(best)} over {', '.join(_describe(r) for r in rivals)}",
                candidates=[best, *rivals],
            )
            logger.warning(f"{recording.name}: {ambiguity}")
            if self.audit is not None:
                self.audit.append(MoveRecord(
                    source=recording.path,
                    destination=None,
                    outcome=MoveOutcome.AMBIGUOUS,
                    error_kind=ambiguity.kind,
                    detail=str(ambiguity),
                ))

        logger.info(f"{recording.name}: resolved -> {_describe(best)}")
        return best
