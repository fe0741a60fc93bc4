from config.settings import Settings, settings, validate_settings

__all__ = ["Settings", "settings", "validate_settings"]
