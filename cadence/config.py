import logging
import os
from dataclasses import dataclass
from datetime import tzinfo
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

load_dotenv()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass
class Settings:
    token: str | None = None
    guild_id: int | None = None
    db_path: str = 'data.db'
    logs_token: str | None = None
    http_host: str = '127.0.0.1'
    http_port: int = 3001
    bot_http_base: str = 'http://localhost:3001'
    dashboard_host: str = '127.0.0.1'
    dashboard_port: int = 3000
    timezone: str | None = None
    log_level: int = logging.INFO
    log_file: str = 'discord.log'
    dashboard_log_file: str = 'dashboard.log'
    send_timeout: float = 15.0

    @classmethod
    def from_env(cls) -> 'Settings':
        guild = os.getenv('GUILD_ID')
        settings = cls(
            token=os.getenv('BOT_TOKEN') or os.getenv('DISCORD_TOKEN'),
            guild_id=int(guild) if guild else None,
            db_path=os.getenv('SQLITE_PATH') or os.getenv('BOT_DB_PATH') or 'data.db',
            logs_token=os.getenv('LOGS_TOKEN') or None,
            http_host=os.getenv('BOT_HTTP_HOST', '127.0.0.1'),
            http_port=_env_int('BOT_HTTP_PORT', 3001),
            bot_http_base=os.getenv('BOT_HTTP_BASE', 'http://localhost:3001').rstrip('/'),
            dashboard_host=os.getenv('DASHBOARD_HOST', '127.0.0.1'),
            dashboard_port=_env_int('DASHBOARD_PORT', 3000),
            timezone=os.getenv('BOT_TIMEZONE') or None,
            log_level=getattr(logging, os.getenv('BOT_LOG_LEVEL', 'INFO').upper(), logging.INFO),
            log_file=os.getenv('BOT_LOG_FILE', 'discord.log'),
            dashboard_log_file=os.getenv('DASHBOARD_LOG_FILE', 'dashboard.log'),
            send_timeout=_env_float('SEND_TIMEOUT_SECONDS', 15.0),
        )
        # Fail at startup rather than on the first schedule computation
        settings.tzinfo()
        return settings

    def tzinfo(self) -> tzinfo | None:
        """Zone used to interpret HH:MM schedule times.

        ``None`` means the host's local zone, resolved afresh for every timestamp
        so DST changes on the host are followed.
        """
        if not self.timezone:
            return None
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            raise ValueError(f"Unknown BOT_TIMEZONE {self.timezone!r}") from None
