from .signal_store import SignalStore, StoreListener

__all__ = ["SignalStore", "StoreListener"]
