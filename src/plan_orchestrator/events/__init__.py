from .bus import CHANNELS, EventBus, Subscription

__all__ = ["CHANNELS", "EventBus", "Subscription"]
