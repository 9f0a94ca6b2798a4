"""Link configuration helpers."""

from .settings import LinkSettings, config_summary, get_settings, mask_secret

__all__ = ["LinkSettings", "config_summary", "get_settings", "mask_secret"]
