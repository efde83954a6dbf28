"""Moteur SQLite et sessions.

Une base en mémoire partage une seule connexion (StaticPool); un fichier
utilise le pool par défaut, une connexion par session, en mode WAL.
"""
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

DB_FILENAME = "maintainarr.db"

engine = None
SessionLocal = None


def _configure_sqlite(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    # les suppressions de règles reposent sur les FK
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def _enable_wal(dbapi_connection, connection_record):
    # les lectures de l'API ne bloquent pas l'écriture d'un scan
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def is_memory_url(database_url: str) -> bool:
    """True pour une base SQLite en mémoire (``sqlite://``, ``:memory:``)."""
    url = database_url.strip()
    return url in ("sqlite://", "sqlite:///:memory:") or "mode=memory" in url


def _writable_data_dir(data_dir: str) -> Path:
    path = Path(data_dir)
    try:
        path.mkdir(parents=True, exist_ok=True)
        marker = path / ".write_test"
        marker.touch()
        marker.unlink()
    except OSError as e:
        logger.error(f"Data directory {data_dir} is not writable: {str(e)}")
        raise PermissionError(f"Cannot write to {data_dir}: {str(e)}")
    return path


def init_engine(database_url: str) -> None:
    """Moteur, fabrique de sessions et tables pour ``database_url``.

    Une base en mémoire n'existe que dans sa connexion: elle est partagée
    via StaticPool. Un fichier garde le pool par défaut pour que chaque
    session (scan en arrière-plan, requête API) ait sa propre transaction.

    Les sessions gardent leurs attributs après commit: les jobs de fond
    passent les lignes chargées après avoir commité.
    """
    global engine, SessionLocal

    if is_memory_url(database_url):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    else:
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            echo=False,
        )
        event.listen(engine, "connect", _enable_wal)
    event.listen(engine, "connect", _configure_sqlite)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

    from maintainarr.db.models import Base
    Base.metadata.create_all(bind=engine)


def init_db(data_dir: str = "/data", database_url: Optional[str] = None) -> None:
    """Initialise la base: URL explicite, sinon <data_dir>/maintainarr.db."""
    if database_url is None:
        database_url = f"sqlite:///{_writable_data_dir(data_dir) / DB_FILENAME}"
    logger.info(f"Initializing database at: {database_url}")
    try:
        init_engine(database_url)
    except Exception as e:
        logger.error(f"Failed to initialize database {database_url}: {str(e)}")
        raise
    logger.info("Database initialized successfully")


def _new_session() -> Session:
    if SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return SessionLocal()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency."""
    db = _new_session()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope() -> Iterator[Session]:
    """Session des jobs de fond; rollback de ce qui n'a pas été commité."""
    db = _new_session()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
