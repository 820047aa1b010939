import os
import yaml
from typing import List, Dict, Any, Optional
from pathlib import Path

class Settings:
    """Application settings for PlotLink backend"""

    # API Configuration
    API_TITLE: str = "PlotLink API"
    API_VERSION: str = "1.0.0"
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 9080

    # CORS Configuration
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",  # Vite dev server
        "http://127.0.0.1:5173"
    ]

    # Device Configuration
    DEVICE_PORT: Optional[str] = None  # None means auto-discover an EBB
    DEVICE_BAUDRATE: int = 9600
    DEVICE_TIMEOUT: float = 1.0
    RECONNECT_INTERVAL: float = 5.0  # seconds between discovery/open retries

    # Plot Configuration
    MAX_PAYLOAD_BYTES: int = 100 * 1024 * 1024  # 100MB

    # WebSocket Configuration
    WS_PING_INTERVAL: float = 20.0
    WS_PING_TIMEOUT: float = 20.0

    # Logging Configuration
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    @classmethod
    def get_device_port(cls) -> Optional[str]:
        """Get fixed device port with environment variable override"""
        env_port = os.getenv("PLOTLINK_DEVICE")
        if env_port:
            return env_port
        return cls.DEVICE_PORT

    @classmethod
    def get_cors_origins(cls) -> List[str]:
        """Get CORS origins with environment variable override"""
        env_origins = os.getenv("CORS_ORIGINS")
        if env_origins:
            return env_origins.split(",")
        return cls.CORS_ORIGINS


class Config:
    """Configuration class that loads settings from YAML file specified by PL_CONFIG environment variable"""

    def __init__(self):
        """Initialize configuration by loading from YAML file"""
        self._config_data = {}
        self._load_config()

    def _load_config(self):
        """Load configuration from YAML file specified by PL_CONFIG environment variable"""
        config_file_path = os.getenv("PL_CONFIG")

        if not config_file_path:
            # If no config file specified, use default location
            config_file_path = "/app/local_storage/config/config.yaml"

        config_path = Path(config_file_path)

        if not config_path.exists():
            self._create_default_config_file(config_path)
            return

        try:
            with open(config_path, 'r', encoding='utf-8') as file:
                self._config_data = yaml.safe_load(file) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML configuration file: {e}")
        except Exception as e:
            raise RuntimeError(f"Error loading configuration file: {e}")

    def _create_default_config_file(self, config_path: Path):
        """Create default configuration file with default values"""
        try:
            config_path.parent.mkdir(parents=True, exist_ok=True)

            default_config = self._get_default_config()

            with open(config_path, 'w', encoding='utf-8') as file:
                yaml.dump(default_config, file, default_flow_style=False, indent=2, sort_keys=False)

            self._config_data = default_config

        except Exception as e:
            raise RuntimeError(f"Error creating default configuration file: {e}")

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration values"""
        return {
            "api": {
                "title": Settings.API_TITLE,
                "version": Settings.API_VERSION,
                "host": Settings.API_HOST,
                "port": Settings.API_PORT
            },
            "cors": {
                "enabled": False,
                "origins": list(Settings.CORS_ORIGINS)
            },
            "device": {
                "port": Settings.DEVICE_PORT,
                "baudrate": Settings.DEVICE_BAUDRATE,
                "timeout": Settings.DEVICE_TIMEOUT,
                "reconnect_interval": Settings.RECONNECT_INTERVAL,
                "liveness_interval": 1.0,
                "microstepping_mode": 2,
                "pen_servo_min": 7500,
                "pen_servo_max": 28000
            },
            "plot": {
                "max_payload_bytes": Settings.MAX_PAYLOAD_BYTES
            },
            "websocket": {
                "ping_interval": Settings.WS_PING_INTERVAL,
                "ping_timeout": Settings.WS_PING_TIMEOUT
            },
            "logging": {
                "level": Settings.LOG_LEVEL,
                "format": Settings.LOG_FORMAT
            }
        }

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value using dot notation (e.g., 'api.port')"""
        keys = key.split('.')
        value = self._config_data

        try:
            for k in keys:
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    @property
    def api_title(self) -> str:
        """Get API title"""
        return self.get('api.title', Settings.API_TITLE)

    @property
    def api_version(self) -> str:
        """Get API version"""
        return self.get('api.version', Settings.API_VERSION)

    @property
    def api_host(self) -> str:
        """Get API host"""
        return self.get('api.host', Settings.API_HOST)

    @property
    def api_port(self) -> int:
        """Get API port"""
        return self.get('api.port', Settings.API_PORT)

    @property
    def cors_enabled(self) -> bool:
        """Whether CORS middleware is installed"""
        return bool(self.get('cors.enabled', False))

    @property
    def cors_origins(self) -> List[str]:
        """Get CORS origins"""
        if os.getenv("CORS_ORIGINS"):
            return Settings.get_cors_origins()
        return self.get('cors.origins', list(Settings.CORS_ORIGINS))

    @property
    def device_port(self) -> Optional[str]:
        """Fixed device port, or None to auto-discover"""
        return Settings.get_device_port() or self.get('device.port')

    @property
    def device_baudrate(self) -> int:
        return self.get('device.baudrate', Settings.DEVICE_BAUDRATE)

    @property
    def device_timeout(self) -> float:
        return self.get('device.timeout', Settings.DEVICE_TIMEOUT)

    @property
    def reconnect_interval(self) -> float:
        """Seconds to wait before retrying discovery or open"""
        return self.get('device.reconnect_interval', Settings.RECONNECT_INTERVAL)

    @property
    def liveness_interval(self) -> float:
        """Seconds between checks that an open device is still attached"""
        return self.get('device.liveness_interval', 1.0)

    @property
    def microstepping_mode(self) -> int:
        return self.get('device.microstepping_mode', 2)

    @property
    def pen_servo_min(self) -> int:
        return self.get('device.pen_servo_min', 7500)

    @property
    def pen_servo_max(self) -> int:
        return self.get('device.pen_servo_max', 28000)

    @property
    def max_payload_bytes(self) -> int:
        """Largest accepted plan body in bytes"""
        return self.get('plot.max_payload_bytes', Settings.MAX_PAYLOAD_BYTES)

    @property
    def ws_ping_interval(self) -> float:
        """Seconds between server WebSocket keepalive pings"""
        return self.get('websocket.ping_interval', Settings.WS_PING_INTERVAL)

    @property
    def ws_ping_timeout(self) -> float:
        return self.get('websocket.ping_timeout', Settings.WS_PING_TIMEOUT)

    @property
    def log_level(self) -> str:
        """Get log level"""
        return self.get('logging.level', Settings.LOG_LEVEL)

    @property
    def log_format(self) -> str:
        """Get log format"""
        return self.get('logging.format', Settings.LOG_FORMAT)


# Create config instance
config = Config()
