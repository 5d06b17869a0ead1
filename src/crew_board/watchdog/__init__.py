"""Compliance watchdog: quiet hours, idle nudges, cadence and mention rescue.

Decision functions are pure ``(TeamSnapshot, config, now_ms) -> decisions``;
:class:`crew_board.watchdog.runner.WatchdogRunner` owns cooldown state and
message delivery.
"""
