"""Sync wave state machine.

A wave walks the phases ``artists -> albums -> songs -> done``. Each phase is
paged from a persisted resume cursor, so an interrupted wave continues where
it stopped. The cursor is reset whenever the phase changes.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .models import SyncPhase, SyncWave, WaveKind, utcnow
from .service import LibraryContext

logger = logging.getLogger(__name__)

PHASE_ORDER = (SyncPhase.ARTISTS, SyncPhase.ALBUMS, SyncPhase.SONGS, SyncPhase.DONE)


@dataclass(frozen=True)
class ChangeSnapshot:
    """Remote library change timestamps.

    Attributes:
        date_of_last_update: Last metadata update on the server
        date_of_last_add: Last time content was added
        date_of_last_clean: Last catalog clean
    """

    date_of_last_update: datetime
    date_of_last_add: datetime
    date_of_last_clean: datetime

    @classmethod
    def now(cls) -> "ChangeSnapshot":
        """Snapshot with every date set to the current time."""
        now = utcnow()
        return cls(now, now, now)

    @classmethod
    def from_wave(cls, wave: SyncWave) -> "ChangeSnapshot":
        """Read the snapshot stored on a wave."""
        return cls(
            date_of_last_update=wave.date_of_last_update,
            date_of_last_add=wave.date_of_last_add,
            date_of_last_clean=wave.date_of_last_clean,
        )

    def apply_to(self, wave: SyncWave) -> None:
        """Store this snapshot on a wave."""
        wave.date_of_last_update = self.date_of_last_update
        wave.date_of_last_add = self.date_of_last_add
        wave.date_of_last_clean = self.date_of_last_clean


def next_phase(phase: SyncPhase, skip_songs: bool = False) -> SyncPhase:
    """Phase following ``phase``.

    Args:
        phase: Current phase
        skip_songs: Go from albums straight to done

    Returns:
        The next phase; done stays done
    """
    if phase == SyncPhase.DONE:
        return SyncPhase.DONE
    if phase == SyncPhase.ALBUMS and skip_songs:
        return SyncPhase.DONE
    return PHASE_ORDER[PHASE_ORDER.index(phase) + 1]


class SyncWaveState:
    """Phase and cursor transitions on a persisted ``SyncWave``."""

    def __init__(self, wave: SyncWave) -> None:
        """Initialize wave state.

        Args:
            wave: Persisted wave record, mutated in place
        """
        self.wave = wave

    @property
    def phase(self) -> SyncPhase:
        """Current phase."""
        return SyncPhase(self.wave.phase)

    @phase.setter
    def phase(self, value: SyncPhase) -> None:
        """Change phase; the cursor always restarts at 0."""
        self.wave.phase = value.value
        self.wave.resume_cursor = 0

    @property
    def cursor(self) -> int:
        """Pagination offset of the current phase."""
        return self.wave.resume_cursor

    @property
    def is_done(self) -> bool:
        """Whether the wave completed."""
        return self.phase == SyncPhase.DONE

    @property
    def is_initial_wave(self) -> bool:
        """Whether this is the first wave of the library."""
        return self.wave.id == 0

    @property
    def kind(self) -> WaveKind:
        """Normal or version-migration wave."""
        return WaveKind(self.wave.wave_kind)

    @property
    def snapshot(self) -> ChangeSnapshot:
        """Remote change snapshot captured at creation."""
        return ChangeSnapshot.from_wave(self.wave)

    def record_page(self, parsed_count: int, skip_songs: bool = False) -> bool:
        """Account for a decoded and committed page.

        A page with zero items completes the phase.

        Args:
            parsed_count: Entities decoded from the page
            skip_songs: Bypass the songs phase after albums

        Returns:
            True if the page completed the phase
        """
        if parsed_count > 0:
            self.wave.resume_cursor += parsed_count
            return False
        self.complete_phase(skip_songs=skip_songs)
        return True

    def complete_phase(self, skip_songs: bool = False) -> None:
        """Advance to the next phase."""
        finished = self.phase
        self.phase = next_phase(finished, skip_songs=skip_songs)
        logger.info(
            "Sync wave %s: %s phase complete, now %s",
            self.wave.id,
            finished.value,
            self.phase.value,
        )

    def finish(self) -> None:
        """Mark the wave done."""
        self.phase = SyncPhase.DONE


@dataclass
class WavePlan:
    """What a background resync should run.

    Attributes:
        wave: Wave to drive
        resumed: True if an unfinished wave is continued
        previous_add_date: Delta base for ``add`` queries, None for full pulls
    """

    wave: SyncWave
    resumed: bool
    previous_add_date: Optional[datetime]

    @property
    def state(self) -> SyncWaveState:
        """State machine over the planned wave."""
        return SyncWaveState(self.wave)


def _delta_base(library: LibraryContext, wave: SyncWave) -> Optional[datetime]:
    """Add date of the wave before ``wave``, or None when a full pull is needed."""
    if wave.wave_kind == WaveKind.VERSION_MIGRATION.value or wave.id == 0:
        return None
    previous = library.get_sync_wave(wave.id - 1)
    return previous.date_of_last_add if previous is not None else None


def plan_wave(
    library: LibraryContext,
    remote_snapshot: ChangeSnapshot,
    version_migration: Optional[int] = None,
) -> Optional[WavePlan]:
    """Decide which wave a resync drives.

    An unfinished latest wave is always resumed. A new wave is created only
    when the latest one is done and either the remote add date moved or a
    version migration is requested.

    Args:
        library: Storage context used to read and create waves
        remote_snapshot: Change dates from the current handshake
        version_migration: Schema version to migrate from, if requested

    Returns:
        Plan to execute, or None when nothing changed
    """
    latest = library.latest_sync_wave()

    if (
        latest is not None
        and latest.phase != SyncPhase.DONE.value
        and version_migration is not None
        and latest.wave_kind == WaveKind.VERSION_MIGRATION.value
        and latest.schema_version != version_migration
    ):
        logger.warning(
            "Abandon migration wave %s from schema %s, schema %s requested",
            latest.id,
            latest.schema_version,
            version_migration,
        )
        SyncWaveState(latest).finish()
        wave = library.create_sync_wave(WaveKind.VERSION_MIGRATION, version_migration)
        remote_snapshot.apply_to(wave)
        return WavePlan(wave, False, None)

    if latest is not None and latest.phase != SyncPhase.DONE.value:
        logger.info(
            "Continue sync wave %s at %s/%s",
            latest.id,
            latest.phase,
            latest.resume_cursor,
        )
        return WavePlan(latest, True, _delta_base(library, latest))

    if version_migration is not None:
        logger.info("Start version migration wave from schema %s", version_migration)
        wave = library.create_sync_wave(WaveKind.VERSION_MIGRATION, version_migration)
        remote_snapshot.apply_to(wave)
        return WavePlan(wave, False, None)

    if latest is None:
        logger.info("No sync wave yet, starting initial wave")
        wave = library.create_sync_wave()
        remote_snapshot.apply_to(wave)
        return WavePlan(wave, False, None)

    if remote_snapshot.date_of_last_add != latest.date_of_last_add:
        logger.info(
            "New changes on server (add date %s -> %s)",
            latest.date_of_last_add,
            remote_snapshot.date_of_last_add,
        )
        wave = library.create_sync_wave(schema_version=latest.schema_version)
        remote_snapshot.apply_to(wave)
        return WavePlan(wave, False, latest.date_of_last_add)

    logger.info("No changes on server since sync wave %s", latest.id)
    return None
