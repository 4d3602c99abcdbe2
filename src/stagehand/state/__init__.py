from stagehand.state.store import JsonStateStore

__all__ = ["JsonStateStore"]
