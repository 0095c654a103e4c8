from hft_fleet.services.notifications.telegram import TelegramNotifier, get_notifier

__all__ = ["TelegramNotifier", "get_notifier"]
