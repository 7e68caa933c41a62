def __getattr__(name):
    if name == "ChatOrchestrator":
        from .conversation.orchestrator import ChatOrchestrator
        return ChatOrchestrator
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

__all__ = ['ChatOrchestrator']
