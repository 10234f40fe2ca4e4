from .state_store import StateStore, close_state_store, get_state_store

__all__ = ["StateStore", "get_state_store", "close_state_store"]
