"""
Engine e sessao sincronos para os workers Celery.

As tasks de lembrete e de email rodam fora do event loop, entao usam psycopg2
em vez de asyncpg. O engine e criado na primeira utilizacao para que importar
o modulo (API, testes) nao abra pool nenhum.
"""
import logging
from contextlib import contextmanager
from typing import Any, Dict, Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings

logger = logging.getLogger(__name__)

# Workers run with low concurrency; a small pool is enough.
WORKER_POOL_SIZE = 5

_engine: Optional[Engine] = None
_session_factory: Optional[sessionmaker] = None


def _engine_kwargs(url: str) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=WORKER_POOL_SIZE, max_overflow=0)
    return kwargs


def get_sync_engine() -> Engine:
    global _engine
    if _engine is None:
        url = settings.database_url_sync
        _engine = create_engine(url, **_engine_kwargs(url))
        logger.info("sync_engine_created: dialect=%s", _engine.dialect.name)
    return _engine


def _get_session_factory() -> sessionmaker:
    global _session_factory
    if _session_factory is None:
        _session_factory = sessionmaker(
            bind=get_sync_engine(),
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


@contextmanager
def get_sync_db() -> Generator[Session, None, None]:
    """
    Sessao transacional para uma task.

    Commit ao sair do bloco, rollback se a task levantar excecao.

        with get_sync_db() as db:
            db.execute(select(Subscription))
    """
    session = _get_session_factory()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def dispose_sync_engine() -> None:
    """Fecha o pool (chamado no shutdown do worker)."""
    global _engine, _session_factory
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _session_factory = None
