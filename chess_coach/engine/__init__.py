"""Analysis engine access — one session owns the process, everyone else calls through it."""

from chess_coach.engine.session import AnalysisRequest, EngineSession, EngineState

__all__ = ["AnalysisRequest", "EngineSession", "EngineState"]
