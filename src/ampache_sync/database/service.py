"""Storage layer for the synchronized library.

``LibraryStorage`` owns the engine and hands out ``LibraryContext`` objects.
A context wraps one SQLAlchemy session and is the only storage interface the
decoders and the syncer talk to: get/create/delete by remote id per entity
kind, plus commit. Every worker thread uses its own context.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple, Type, TypeVar

from sqlalchemy import create_engine, func, inspect, select
from sqlalchemy.orm import Session, sessionmaker

from alembic import command  # type: ignore[attr-defined]
from alembic.config import Config as AlembicConfig  # type: ignore[import-not-found]

from .models import (
    Album,
    Artist,
    Base,
    Directory,
    Genre,
    MusicFolder,
    Playlist,
    PlaylistItem,
    Podcast,
    PodcastEpisode,
    RemoteStatus,
    Song,
    SyncWave,
    WaveKind,
    utcnow,
)

logger = logging.getLogger(__name__)

EntityT = TypeVar("EntityT", bound=Base)

ENTITY_MODELS: Tuple[Type[Base], ...] = (
    Genre,
    Artist,
    Album,
    Song,
    Playlist,
    Podcast,
    PodcastEpisode,
    MusicFolder,
    Directory,
)


class LibraryContext:
    """Storage operations bound to a single database session."""

    def __init__(self, session: Session) -> None:
        """Initialize library context.

        Args:
            session: SQLAlchemy session owned by this context
        """
        self.session = session
        # Entities resolved or created in this context, keyed by kind and id.
        # Needed because the session does not autoflush pending objects.
        self._identity: Dict[Tuple[type, str], Any] = {}

    # =========================================================================
    # Entity Operations
    # =========================================================================

    def get_entity(self, model: Type[EntityT], remote_id: str) -> Optional[EntityT]:
        """Get an entity by its remote id.

        Args:
            model: Entity class
            remote_id: Identifier assigned by the server

        Returns:
            Entity or None if not found
        """
        key = (model, remote_id)
        if key in self._identity:
            return self._identity[key]
        entity = self.session.scalars(
            select(model).where(model.remote_id == remote_id)  # type: ignore[attr-defined]
        ).first()
        if entity is not None:
            self._identity[key] = entity
        return entity

    def create_entity(
        self,
        model: Type[EntityT],
        remote_id: str,
        sync_wave: Optional[SyncWave] = None,
        **fields: Any,
    ) -> EntityT:
        """Create an entity and link it to the wave that discovered it.

        Args:
            model: Entity class
            remote_id: Identifier assigned by the server
            sync_wave: Wave creating the entity, if any
            **fields: Initial column values

        Returns:
            The new, pending entity
        """
        entity = model(remote_id=remote_id, **fields)  # type: ignore[call-arg]
        entity.remote_status = RemoteStatus.AVAILABLE.value  # type: ignore[attr-defined]
        if sync_wave is not None:
            entity.sync_wave_id = sync_wave.id  # type: ignore[attr-defined]
        self.session.add(entity)
        if remote_id:
            self._identity[(model, remote_id)] = entity
        return entity

    def get_or_create_entity(
        self,
        model: Type[EntityT],
        remote_id: str,
        sync_wave: Optional[SyncWave] = None,
    ) -> EntityT:
        """Resolve an entity by remote id, creating it when it is unknown."""
        entity = self.get_entity(model, remote_id)
        if entity is None:
            entity = self.create_entity(model, remote_id, sync_wave)
        return entity

    def delete_entity(self, entity: Base) -> None:
        """Delete an entity from the local store."""
        remote_id = getattr(entity, "remote_id", None)
        self._identity.pop((type(entity), remote_id), None)
        self.session.delete(entity)

    def get_all(self, model: Type[EntityT]) -> List[EntityT]:
        """Get every entity of a kind."""
        return list(self.session.scalars(select(model)).all())

    def filter_by(self, model: Type[EntityT], **criteria: Any) -> List[EntityT]:
        """Get entities of a kind matching column or relationship values."""
        return list(self.session.scalars(select(model).filter_by(**criteria)).all())

    def get_playlist(self, playlist_id: int) -> Optional[Playlist]:
        """Get a playlist by its local primary key."""
        return self.session.get(Playlist, playlist_id)

    def get_favorites(self, model: Type[EntityT]) -> List[EntityT]:
        """Get every entity of a kind flagged as favorite."""
        return list(
            self.session.scalars(
                select(model).where(model.is_favorite.is_(True))  # type: ignore[attr-defined]
            ).all()
        )

    def get_remote_playlists(self) -> List[Playlist]:
        """Get playlists that exist on the server (non-empty remote id)."""
        return list(
            self.session.scalars(
                select(Playlist).where(Playlist.remote_id != "")
            ).all()
        )

    def mark_deleted(self, entity: Base) -> None:
        """Flag an entity as removed on the server."""
        entity.remote_status = RemoteStatus.DELETED.value  # type: ignore[attr-defined]

    # =========================================================================
    # Playlist Item Operations
    # =========================================================================

    def append_playlist_songs(self, playlist: Playlist, songs: Sequence[Song]) -> None:
        """Append songs at the end of a playlist."""
        next_order = len(playlist.items)
        for song in songs:
            playlist.items.append(PlaylistItem(song=song, order=next_order))
            next_order += 1

    def remove_playlist_item(self, playlist: Playlist, index: int) -> None:
        """Remove the item at a 0-based index and close the gap."""
        items = sorted(playlist.items, key=lambda item: item.order)
        if index < 0 or index >= len(items):
            raise IndexError(f"Playlist index out of range: {index}")
        playlist.items.remove(items[index])
        self.ensure_consistent_order(playlist)

    def move_playlist_item(self, playlist: Playlist, from_index: int, to_index: int) -> None:
        """Move an item between two 0-based positions."""
        items = sorted(playlist.items, key=lambda item: item.order)
        if not (0 <= from_index < len(items)) or not (0 <= to_index < len(items)):
            raise IndexError(f"Playlist index out of range: {from_index} -> {to_index}")
        item = items.pop(from_index)
        items.insert(to_index, item)
        for order, current in enumerate(items):
            current.order = order

    def ensure_consistent_order(self, playlist: Playlist) -> None:
        """Renumber items so their order is 0..n-1 without gaps."""
        for order, item in enumerate(sorted(playlist.items, key=lambda i: i.order)):
            item.order = order

    # =========================================================================
    # Sync Wave Operations
    # =========================================================================

    def latest_sync_wave(self) -> Optional[SyncWave]:
        """Get the most recent sync wave."""
        return self.session.scalars(
            select(SyncWave).order_by(SyncWave.id.desc()).limit(1)
        ).first()

    def get_sync_waves(self) -> List[SyncWave]:
        """Get the full wave history, oldest first."""
        return list(self.session.scalars(select(SyncWave).order_by(SyncWave.id)).all())

    def create_sync_wave(
        self,
        wave_kind: WaveKind = WaveKind.NORMAL,
        schema_version: int = 0,
    ) -> SyncWave:
        """Append a new wave to the history.

        Args:
            wave_kind: Normal or version migration
            schema_version: Library schema version the wave migrates from

        Returns:
            The new wave, starting at the artists phase
        """
        max_id = self.session.scalar(select(func.max(SyncWave.id)))
        now = utcnow()
        wave = SyncWave(
            id=0 if max_id is None else max_id + 1,
            resume_cursor=0,
            date_of_last_update=now,
            date_of_last_add=now,
            date_of_last_clean=now,
            wave_kind=wave_kind.value,
            schema_version=schema_version,
        )
        self.session.add(wave)
        self.session.flush()
        logger.info("Created sync wave %s (%s)", wave.id, wave.wave_kind)
        return wave

    def get_sync_wave(self, wave_id: int) -> Optional[SyncWave]:
        """Get a wave by id."""
        return self.session.get(SyncWave, wave_id)

    # =========================================================================
    # Transaction Control
    # =========================================================================

    def commit(self) -> None:
        """Commit pending changes."""
        self.session.commit()

    def rollback(self) -> None:
        """Discard pending changes and the identity cache."""
        self.session.rollback()
        self._identity.clear()

    def close(self) -> None:
        """Close the underlying session."""
        self.session.close()


class LibraryStorage:
    """Owns the database engine and creates library contexts."""

    def __init__(self, db_path: Optional[Path] = None) -> None:
        """Initialize library storage.

        Args:
            db_path: Path to SQLite database file.
                    If None, uses default ~/.ampache-sync/library.db
        """
        if db_path is None:
            db_path = Path.home() / ".ampache-sync" / "library.db"

        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        db_exists = self.db_path.exists()

        # Worker threads each open their own session on a pooled connection
        self.engine = create_engine(
            f"sqlite:///{self.db_path}",
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

        logger.info("Database initialized at: %s", self.db_path)

        if not db_exists:
            logger.info("New database detected, initializing schema...")
            self.init_db()

    def init_db(self) -> None:
        """Create all tables and stamp the migration history as current."""
        Base.metadata.create_all(bind=self.engine)
        logger.info("Database schema created successfully")
        self._stamp_migrations()

    def _alembic_config(self) -> Optional[AlembicConfig]:
        """Build an Alembic config pointing at this database."""
        package_dir = Path(__file__).parent.parent.parent.parent
        alembic_ini = package_dir / "alembic.ini"
        alembic_dir = package_dir / "alembic"

        if not alembic_ini.exists() or not alembic_dir.exists():
            logger.warning("Alembic not found at %s, skipping migrations", package_dir)
            return None

        alembic_cfg = AlembicConfig(str(alembic_ini))
        alembic_cfg.set_main_option("script_location", str(alembic_dir))
        alembic_cfg.set_main_option("sqlalchemy.url", f"sqlite:///{self.db_path}")
        # Keep the application logging configuration
        alembic_cfg.attributes["configure_logger"] = False
        return alembic_cfg

    def _stamp_migrations(self) -> None:
        """Stamp database as being at the latest migration version."""
        try:
            alembic_cfg = self._alembic_config()
            if alembic_cfg is None:
                return
            command.stamp(alembic_cfg, "head")
            logger.info("Database stamped with latest migration version")
        except Exception as e:
            logger.error("Failed to stamp migrations: %s", e)
            logger.warning("Database may need manual migration")

    def run_migrations(self) -> None:
        """Run Alembic migrations to upgrade database to latest version."""
        try:
            alembic_cfg = self._alembic_config()
            if alembic_cfg is None:
                return
            command.upgrade(alembic_cfg, "head")
            logger.info("Database migrations applied successfully")
        except Exception as e:
            logger.error("Failed to run migrations: %s", e)
            logger.warning("Continuing with base schema only")

    def get_session(self) -> Session:
        """Get a new database session.

        Returns:
            SQLAlchemy Session object

        Note:
            Caller is responsible for closing the session
        """
        return self.SessionLocal()

    @contextmanager
    def context(self) -> Iterator[LibraryContext]:
        """Open a library context and close it afterwards.

        Uncommitted changes are rolled back when the block raises.
        """
        library = LibraryContext(self.get_session())
        try:
            yield library
        except Exception:
            library.rollback()
            raise
        finally:
            library.close()

    def is_initialized(self) -> bool:
        """Check whether the schema exists and a session can be opened."""
        try:
            inspector = inspect(self.engine)
            if not inspector.has_table("sync_waves"):
                logger.debug("Required table sync_waves missing")
                return False
            with self.SessionLocal() as session:
                session.execute(select(1))
            return True
        except Exception as e:
            logger.debug("Database initialization check failed: %s", e)
            return False

    def get_statistics(self) -> Dict[str, Any]:
        """Get per-kind entity counts.

        Returns:
            Dictionary with statistics
        """
        stats: Dict[str, Any] = {}
        with self.get_session() as session:
            for model in ENTITY_MODELS:
                table = model.__tablename__
                stats[table] = session.scalar(select(func.count()).select_from(model))
                stats[f"{table}_deleted"] = session.scalar(
                    select(func.count())
                    .select_from(model)
                    .where(
                        model.remote_status == RemoteStatus.DELETED.value  # type: ignore[attr-defined]
                    )
                )
            stats["sync_waves"] = session.scalar(
                select(func.count()).select_from(SyncWave)
            )
        stats["database_path"] = str(self.db_path)
        return stats

    def close(self) -> None:
        """Close database connection."""
        if hasattr(self, "engine"):
            self.engine.dispose()
            logger.info("Database connection closed")
