from hft_fleet.services.bot_lifecycle.controller import BotLifecycleController

__all__ = ["BotLifecycleController"]
