from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from .settings import settings

DATABASE_URL = settings.database_url

# произвольный ключ advisory-блокировки для мутаций графа групп
GROUP_GRAPH_LOCK_KEY = 4_201_017

logger = structlog.get_logger(__name__)

engine = create_async_engine(DATABASE_URL, echo=False, future=True)

async_session_factory = async_sessionmaker(
    bind=engine, expire_on_commit=False, class_=AsyncSession
)


class Base(DeclarativeBase):
    pass


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Единица работы поверх сессии: всё, что выполнено внутри блока
    (включая проверки предусловий), фиксируется одним commit.
    Любое исключение откатывает транзакцию целиком; ошибки хранилища
    логируются и пробрасываются без изменений.
    """
    try:
        yield session
        await session.commit()
    except SQLAlchemyError:
        await session.rollback()
        logger.error("store_failure", exc_info=True)
        raise
    except BaseException:
        await session.rollback()
        raise


async def lock_group_graph(session: AsyncSession) -> None:
    """
    Сериализовать мутации графа групп до конца текущей транзакции.
    На PostgreSQL берётся pg_advisory_xact_lock; прочие диалекты
    (SQLite в тестах) сериализуют запись сами.
    """
    bind = session.bind
    if bind is None or bind.dialect.name != "postgresql":
        return
    await session.execute(
        text("SELECT pg_advisory_xact_lock(:key)"), {"key": GROUP_GRAPH_LOCK_KEY}
    )
