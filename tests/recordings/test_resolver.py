"""Tests for MetadataResolver: local-first resolution, caching and ambiguity."""

from pathlib import Path
from unittest.mock import MagicMock

import pytest

from dvr_manager.core.cache import IdentityCache
from dvr_manager.core.errors import MetadataServiceError, ResolutionUnresolvable
from dvr_manager.core.models import MediaIdentity, MoveOutcome, RecordingFile, RecordingState
from dvr_manager.recordings.audit import AuditTrail
from dvr_manager.recordings.resolver import MetadataResolver


def _recording(name: str) -> RecordingFile:
    return RecordingFile(
        path=Path("/recordings") / name,
        size=100,
        mtime=1.0,
        state=RecordingState.STABLE_UNRESOLVED,
    )


def _provider(*candidates: MediaIdentity) -> MagicMock:
    provider = MagicMock()
    provider.identify.return_value = list(candidates)
    return provider


class TestLocalResolution:
    """Recordings whose names are conclusive never reach the provider."""

    def test_strong_local_match_skips_provider(self):
        provider = _provider()
        resolver = MetadataResolver(IdentityCache(), provider=provider)

        identity = resolver.resolve(_recording("Some Show - S01E02 - Pilot.ts"))

        assert identity.show == "Some Show"
        assert (identity.season, identity.episode) == (1, 2)
        provider.identify.assert_not_called()

    def test_weak_local_match_without_provider_is_accepted(self):
        resolver = MetadataResolver(IdentityCache(), provider=None, min_confidence=0.5)

        identity = resolver.resolve(_recording("Mystery Show - 102.ts"))

        assert (identity.season, identity.episode) == (1, 2)
        assert identity.source == "local"

    def test_weak_local_match_below_minimum(self):
        resolver = MetadataResolver(IdentityCache(), provider=None, confidence_threshold=0.8, min_confidence=0.6)

        with pytest.raises(ResolutionUnresolvable):
            resolver.resolve(_recording("Mystery Show - 102.ts"))


class TestProviderResolution:
    """Tests for the provider fallback."""

    def test_provider_result_preferred_over_weak_local(self):
        remote = MediaIdentity(show="Mystery Show", season=1, episode=2, title="Pilot", confidence=0.9, source="tvmaze")
        provider = _provider(remote)
        resolver = MetadataResolver(IdentityCache(), provider=provider)

        identity = resolver.resolve(_recording("Mystery Show - 102.ts"))

        assert identity == remote
        query = provider.identify.call_args[0][0]
        assert query.show == "Mystery Show"
        assert (query.season, query.episode) == (1, 2)

    def test_resolution_is_cached(self):
        remote = MediaIdentity(show="Mystery Show", season=1, episode=2, confidence=0.9, source="tvmaze")
        provider = _provider(remote)
        cache = IdentityCache()
        resolver = MetadataResolver(cache, provider=provider)

        first = resolver.resolve(_recording("Mystery Show - 102.ts"))
        second = resolver.resolve(_recording("Mystery Show - 102.ts"))

        assert first == second
        assert provider.identify.call_count == 1
        assert cache.hits == 1

    def test_unreachable_provider_makes_weak_match_unresolvable(self):
        provider = MagicMock()
        provider.identify.side_effect = MetadataServiceError("TVmaze unreachable")
        cache = IdentityCache()
        resolver = MetadataResolver(cache, provider=provider)

        with pytest.raises(ResolutionUnresolvable, match="unreachable"):
            resolver.resolve(_recording("Mystery Show - 102.ts"))
        assert len(cache) == 0

    def test_no_candidates(self):
        resolver = MetadataResolver(IdentityCache(), provider=_provider())

        with pytest.raises(ResolutionUnresolvable):
            resolver.resolve(_recording("recording_0001.ts"))

    def test_provider_query_for_unparsed_name(self):
        provider = _provider()
        resolver = MetadataResolver(IdentityCache(), provider=provider)

        with pytest.raises(ResolutionUnresolvable):
            resolver.resolve(_recording("late_night_special.ts"))

        query = provider.identify.call_args[0][0]
        assert query.show == "Late Night Special"
        assert query.season is None


class TestAmbiguity:
    """Equally likely candidates are resolved deterministically and audited."""

    def test_tie_picks_first_and_records_ambiguity(self):
        first = MediaIdentity(show="Mystery Show", season=1, episode=2, confidence=0.9, source="tvmaze")
        second = MediaIdentity(show="Mystery Show (2019)", season=1, episode=2, confidence=0.9, source="tvmaze")
        audit = AuditTrail()
        resolver = MetadataResolver(IdentityCache(), provider=_provider(first, second), audit=audit)
        recording = _recording("Mystery Show - 102.ts")

        identity = resolver.resolve(recording)

        assert identity == first
        records = audit.records()
        assert len(records) == 1
        assert records[0].outcome == MoveOutcome.AMBIGUOUS
        assert records[0].source == recording.path
        assert records[0].error_kind == "ambiguous"

    def test_same_target_is_not_ambiguous(self):
        first = MediaIdentity(show="Mystery Show", season=1, episode=2, confidence=0.9, source="tvmaze")
        twin = MediaIdentity(show="mystery show", season=1, episode=2, title="Pilot", confidence=0.9, source="tvmaze")
        audit = AuditTrail()
        resolver = MetadataResolver(IdentityCache(), provider=_provider(first, twin), audit=audit)

        resolver.resolve(_recording("Mystery Show - 102.ts"))

        assert audit.records() == []
