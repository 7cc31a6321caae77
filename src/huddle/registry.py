import asyncio
from collections.abc import Callable

from huddle.logs import get_logger
from huddle.session import SessionParams, SessionState, StopResult, StreamingSession

SessionFactory = Callable[[SessionParams, Callable[[StreamingSession], None]], StreamingSession]
"""Builds a session for `params`; the callable passed along must run when it closes."""


class SessionRegistry:
  """
  Process-wide table of sessions, keyed by source identifier.

  Holds at most one live session per source. Every change to the table goes through
  `start_if_absent` and `stop` (or the session's own close notification), so no lock
  is needed on the single event loop.
  """

  def __init__(self, session_factory: SessionFactory):
    """
    :param
        session_factory: Creates an unstarted session for the given parameters.
    """
    self._factory = session_factory
    self._sessions: dict[str, StreamingSession] = {}
    self._last_results: dict[str, StopResult] = {}
    self.logger = get_logger("reg")

    # Statistics
    self.total_started = 0
    self.failed_starts = 0

  def __len__(self) -> int:
    return len(self._sessions)

  @property
  def source_ids(self) -> list[str]:
    return list(self._sessions)

  def get(self, source_id: str) -> StreamingSession | None:
    return self._sessions.get(source_id)

  async def start_if_absent(self, params: SessionParams) -> StreamingSession:
    """
    Start a session for `params.source_id`, or return the one already running.

    :returns:
        The new session, now ACTIVE, or the existing session for that source.

    :raises AcquisitionError: No source could be acquired; nothing is left registered.
    :raises RecordingError: Recording could not start; nothing is left registered.
    """
    # Every await below may let another start register a session, so look again after it
    while (existing := self._sessions.get(params.source_id)) is not None:
      if not existing.stop_requested:
        await existing.wait_settled()
        if existing.start_error is not None:
          raise existing.start_error
        if existing.state is SessionState.ACTIVE and not existing.stop_requested:
          self.logger.info(
            "Session already running for source",
            source_id=params.source_id,
            session_id=existing.id,
          )
          return existing

      self.logger.info(
        "Waiting for previous session to close",
        source_id=params.source_id,
        session_id=existing.id,
      )
      await existing.stop()

    session = self._factory(params, self._forget)
    self._sessions[params.source_id] = session
    self._last_results.pop(params.source_id, None)
    self.total_started += 1
    self.logger.info(
      "Starting session",
      source_id=params.source_id,
      session_id=session.id,
      active_sessions=len(self._sessions),
    )

    try:
      await session.start()
    except Exception:
      self.failed_starts += 1
      if self._sessions.get(params.source_id) is session:
        del self._sessions[params.source_id]
      self._last_results.pop(params.source_id, None)
      raise

    return session

  async def stop(self, source_id: str) -> StopResult:
    """
    Stop the session for `source_id`.

    Stopping an unknown source succeeds with no session id; stopping a source whose
    session already closed returns that session's result again.
    """
    session = self._sessions.get(source_id)
    if session is None:
      return self._last_results.get(source_id) or StopResult(session_id=None, success=True)

    self.logger.info("Stopping session", source_id=source_id, session_id=session.id)
    return await session.stop()

  async def stop_all(self) -> list[StopResult]:
    """Stop every registered session concurrently."""
    if not self._sessions:
      return []

    self.logger.info("Stopping all sessions", session_count=len(self._sessions))
    results = await asyncio.gather(
      *(self.stop(source_id) for source_id in list(self._sessions)),
    )
    return list(results)

  def _forget(self, session: StreamingSession) -> None:
    source_id = session.params.source_id
    if session.result is not None:
      self._last_results[source_id] = session.result
    if self._sessions.get(source_id) is session:
      del self._sessions[source_id]
      self.logger.info(
        "Session closed",
        source_id=source_id,
        session_id=session.id,
        active_sessions=len(self._sessions),
      )
