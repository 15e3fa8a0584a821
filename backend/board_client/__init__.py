"""
Command Board client library

Async counterpart of the browser board: API calls, change-feed
subscriptions and the session monitor that keeps a device session alive.

Usage:
    from board_client.api import CommandBoardClient
    from board_client.monitor import SessionMonitor, BoardView
    from board_client.decisions import decide_affordances
"""
