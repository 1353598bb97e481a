"""
Channel adapters: the streaming web chat and the Telegram bot.
"""

from autonaim_interview.channels.base import ChannelAdapter, ChannelRouter, DeliveryResult
from autonaim_interview.channels.telegram import TelegramBotClient, TelegramChannelAdapter
from autonaim_interview.channels.web import StreamEvent, WebChannelAdapter

__all__ = [
    "ChannelAdapter",
    "ChannelRouter",
    "DeliveryResult",
    "StreamEvent",
    "TelegramBotClient",
    "TelegramChannelAdapter",
    "WebChannelAdapter",
]
