from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import AsyncIterator, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession


logger = logging.getLogger(__name__)

_DEPTH_KEY = "helpdesk.tx_depth"
_AFTER_COMMIT_KEY = "helpdesk.after_commit"

AfterCommitCallback = Callable[[], Awaitable[None]]


def in_transaction(session: AsyncSession) -> bool:
    return session.info.get(_DEPTH_KEY, 0) > 0


@asynccontextmanager
async def transaction(session: AsyncSession) -> AsyncIterator[AsyncSession]:
    """Run a block as one all-or-nothing unit on ``session``.

    Nested blocks join the outermost one. Only the outermost block commits, and
    callbacks registered with :func:`after_commit` run once that commit succeeds.
    A failure rolls back and drops the pending callbacks.
    """
    depth = session.info.get(_DEPTH_KEY, 0)
    session.info[_DEPTH_KEY] = depth + 1
    try:
        yield session
    except BaseException:
        session.info[_DEPTH_KEY] = depth
        if depth == 0:
            await session.rollback()
            session.info.pop(_AFTER_COMMIT_KEY, None)
        raise
    session.info[_DEPTH_KEY] = depth
    if depth == 0:
        try:
            await session.commit()
        except BaseException:
            await session.rollback()
            session.info.pop(_AFTER_COMMIT_KEY, None)
            raise
        await _run_after_commit(session)


async def after_commit(session: AsyncSession, callback: AfterCommitCallback) -> None:
    # Outside a transaction block there is nothing to wait for.
    if not in_transaction(session):
        await _invoke(callback)
        return
    session.info.setdefault(_AFTER_COMMIT_KEY, []).append(callback)


async def _run_after_commit(session: AsyncSession) -> None:
    callbacks: list[AfterCommitCallback] = session.info.pop(_AFTER_COMMIT_KEY, [])
    for callback in callbacks:
        await _invoke(callback)


async def _invoke(callback: AfterCommitCallback) -> None:
    # Post-commit side effects are best-effort; the committed state stands.
    try:
        await callback()
    except Exception as exc:  # noqa: BLE001 - publish/dispatch must not undo a commit
        logger.warning("after_commit_callback_failed callback=%r", callback, exc_info=exc)
