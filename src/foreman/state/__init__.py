from foreman.state.store import StateStore

__all__ = ["StateStore"]
