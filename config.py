import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv


# Load .env once at import time (support running from any cwd)
BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / '.env')

DEFAULT_STUN = 'stun:stun.l.google.com:19302'


@dataclass(frozen=True)
class Settings:
    # Relay
    HOST: str = '0.0.0.0'
    PORT: int = 5000
    ROOM_CAPACITY: int = 2
    PING_INTERVAL: float = 20.0
    LOG_LEVEL: str = 'INFO'

    # STUN/TURN
    STUN_SERVER: Optional[str] = DEFAULT_STUN
    TURN_URL: Optional[str] = None
    TURN_USERNAME: Optional[str] = None
    TURN_PASSWORD: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> 'Settings':
        env = os.environ if environ is None else environ
        return cls(
            HOST=env.get('RELAY_HOST', cls.HOST),
            PORT=int(env.get('PORT', cls.PORT)),
            ROOM_CAPACITY=int(env.get('ROOM_CAPACITY', cls.ROOM_CAPACITY)),
            PING_INTERVAL=float(env.get('PING_INTERVAL', cls.PING_INTERVAL)),
            LOG_LEVEL=env.get('LOG_LEVEL', cls.LOG_LEVEL).upper(),
            STUN_SERVER=env.get('STUN_SERVER', DEFAULT_STUN) or None,
            TURN_URL=env.get('TURN_URL') or None,
            TURN_USERNAME=env.get('TURN_USERNAME') or None,
            TURN_PASSWORD=env.get('TURN_PASSWORD') or None,
        )

    def ice_servers(self) -> list[dict]:
        """ICE server list in RTCConfiguration shape."""
        servers = []
        if self.STUN_SERVER:
            servers.append({'urls': self.STUN_SERVER})
        # TURN needs all three to be usable
        if self.TURN_URL and self.TURN_USERNAME and self.TURN_PASSWORD:
            servers.append({
                'urls': self.TURN_URL,
                'username': self.TURN_USERNAME,
                'credential': self.TURN_PASSWORD,
            })
        return servers


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()
