"""Task lifecycle engine for the shared team board.

This package provides the task model, the typed metadata view, the
file-backed store, the transition validator, the gate pipeline and the
engine that runs mutations through them. Import the engine from
:mod:`crew_board.task_engine.engine`.
"""
