"""
Command Services Module

Session admission, incident command arbitration, command handoff and the
liveness reaper. Every operation takes an injected SQLAlchemy session and a
resolved Caller and returns a Result; routers publish Result.changes to the
change feed after commit.

Usage:
    from services.command.sessions import create_session, check_session_status
    from services.command.arbiter import take_command, close_incident
    from services.command.handoff import request_command, approve_command_request
"""
