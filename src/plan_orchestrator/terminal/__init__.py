from .automaton import TerminalAutomaton, TerminalRegistry, timer_scheduler
from .channel import OutputChannel
from .host import ProcessHandle, ProcessHost, PtyProcessHost
from .sessions import SessionStore, build_agent_command, resolve_session, session_has_content

__all__ = [
    "OutputChannel",
    "ProcessHandle",
    "ProcessHost",
    "PtyProcessHost",
    "SessionStore",
    "TerminalAutomaton",
    "TerminalRegistry",
    "build_agent_command",
    "resolve_session",
    "session_has_content",
    "timer_scheduler",
]
