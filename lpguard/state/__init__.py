from lpguard.state.order_store import OrderStore
from lpguard.state.position_store import PositionStore, daily_apr
from lpguard.state.state import JsonFileStore
from lpguard.state.state_atomic import AtomicJsonStore

__all__ = ["AtomicJsonStore", "JsonFileStore", "OrderStore", "PositionStore", "daily_apr"]
