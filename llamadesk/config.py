"""
Configuration for llamadesk.

This module provides configuration dataclasses for asset provisioning,
the llama-server subprocess, the chat client and the UI message channel.
"""

import os
import sys
from dataclasses import dataclass, field
from typing import Optional, List
import yaml


LOOPBACK_HOSTS = ("127.0.0.1", "localhost", "::1")


def _default_binary_path() -> str:
    if sys.platform == "win32":
        return "bin/llama-server.exe"
    return "bin/llama-server"


def _default_cache_dir() -> str:
    return os.path.join(os.path.expanduser("~"), ".cache", "llamadesk")


@dataclass
class AssetConfig:
    """Locations and sources of the server binary and model file."""
    bundled_dir: str = "resources"
    cache_dir: str = field(default_factory=_default_cache_dir)
    binary_path: str = field(default_factory=_default_binary_path)
    binary_url: Optional[str] = None
    binary_sha256: Optional[str] = None
    model_path: str = "models/llama3.1-8b-instruct-q4_K_M.gguf"
    model_url: Optional[str] = None
    model_sha256: Optional[str] = None
    max_redirects: int = 5
    download_timeout: float = 60.0
    chunk_size: int = 1024 * 1024


@dataclass
class ServerConfig:
    """Configuration for the llama-server subprocess."""
    host: str = "127.0.0.1"
    port: int = 18777
    ctx_size: int = 4096
    api_flag: str = "--api"  # OpenAI-compatible REST endpoints (/v1/*)
    extra_args: List[str] = field(default_factory=list)
    ready_timeout_ms: int = 20000
    poll_interval: float = 0.3
    stop_timeout: float = 5.0
    log_path: str = "logs/llama-server.log"

    def __post_init__(self):
        if self.host not in LOOPBACK_HOSTS:
            raise ValueError(
                f"llama-server must bind to loopback, got host={self.host!r}"
            )

    @property
    def base_url(self) -> str:
        host = "[::1]" if self.host == "::1" else self.host
        return f"http://{host}:{self.port}"


@dataclass
class ChatConfig:
    """Configuration for chat requests against llama-server."""
    model: str = "local"  # llama.cpp ignores the model name
    temperature: float = 0.7
    max_tokens: int = 512
    system_prompt: str = "You are a helpful assistant running locally on this computer."
    timeout: float = 30.0
    max_concurrent_requests: int = 1


@dataclass
class ChannelConfig:
    """Configuration for the UI message channel."""
    host: str = "127.0.0.1"
    port: int = 8765
    dev_server_url: Optional[str] = None
    ui_index_path: str = "dist/index.html"


@dataclass
class AppConfig:
    """Complete application configuration."""
    assets: AssetConfig = field(default_factory=AssetConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    chat: ChatConfig = field(default_factory=ChatConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)

    @classmethod
    def from_yaml(cls, path: str) -> "AppConfig":
        """Load configuration from YAML file."""
        with open(path, 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        config = cls()

        for section in ("assets", "chat", "channel"):
            target = getattr(config, section)
            for key, value in (data.get(section) or {}).items():
                if hasattr(target, key):
                    setattr(target, key, value)

        if data.get("server"):
            # Rebuild so the loopback check runs on the loaded host
            values = {
                key: value for key, value in data["server"].items()
                if hasattr(config.server, key)
            }
            config.server = ServerConfig(**values)

        # Environment overrides the file
        config.apply_env()
        return config

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Load configuration from environment variables."""
        config = cls()
        config.apply_env()
        return config

    def apply_env(self) -> None:
        """Override fields from environment variables that are set."""
        # Asset config from env
        if os.getenv("LLAMADESK_BUNDLED_DIR"):
            self.assets.bundled_dir = os.getenv("LLAMADESK_BUNDLED_DIR")

        if os.getenv("LLAMADESK_CACHE_DIR"):
            self.assets.cache_dir = os.getenv("LLAMADESK_CACHE_DIR")

        if os.getenv("LLAMADESK_BINARY_URL"):
            self.assets.binary_url = os.getenv("LLAMADESK_BINARY_URL")

        if os.getenv("LLAMADESK_BINARY_SHA256"):
            self.assets.binary_sha256 = os.getenv("LLAMADESK_BINARY_SHA256")

        if os.getenv("LLAMADESK_MODEL_URL"):
            self.assets.model_url = os.getenv("LLAMADESK_MODEL_URL")

        if os.getenv("LLAMADESK_MODEL_SHA256"):
            self.assets.model_sha256 = os.getenv("LLAMADESK_MODEL_SHA256")

        # Server config from env
        if os.getenv("LLAMA_SERVER_PORT"):
            self.server.port = int(os.getenv("LLAMA_SERVER_PORT"))

        if os.getenv("LLAMA_CTX_SIZE"):
            self.server.ctx_size = int(os.getenv("LLAMA_CTX_SIZE"))

        if os.getenv("LLAMA_READY_TIMEOUT_MS"):
            self.server.ready_timeout_ms = int(os.getenv("LLAMA_READY_TIMEOUT_MS"))

        # Chat config from env
        if os.getenv("CHAT_TEMPERATURE"):
            self.chat.temperature = float(os.getenv("CHAT_TEMPERATURE"))

        if os.getenv("CHAT_MAX_TOKENS"):
            self.chat.max_tokens = int(os.getenv("CHAT_MAX_TOKENS"))

        if os.getenv("CHAT_MAX_CONCURRENT"):
            self.chat.max_concurrent_requests = int(os.getenv("CHAT_MAX_CONCURRENT"))

        # Channel config from env
        if os.getenv("CHANNEL_PORT"):
            self.channel.port = int(os.getenv("CHANNEL_PORT"))

        if os.getenv("LLAMADESK_DEV_SERVER_URL"):
            self.channel.dev_server_url = os.getenv("LLAMADESK_DEV_SERVER_URL")


    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "assets": {
                "bundled_dir": self.assets.bundled_dir,
                "cache_dir": self.assets.cache_dir,
                "binary_path": self.assets.binary_path,
                "binary_url": self.assets.binary_url,
                "model_path": self.assets.model_path,
                "model_url": self.assets.model_url,
                "max_redirects": self.assets.max_redirects
            },
            "server": {
                "host": self.server.host,
                "port": self.server.port,
                "ctx_size": self.server.ctx_size,
                "api_flag": self.server.api_flag,
                "ready_timeout_ms": self.server.ready_timeout_ms
            },
            "chat": {
                "model": self.chat.model,
                "temperature": self.chat.temperature,
                "max_tokens": self.chat.max_tokens,
                "max_concurrent_requests": self.chat.max_concurrent_requests
            },
            "channel": {
                "host": self.channel.host,
                "port": self.channel.port,
                "dev_server_url": self.channel.dev_server_url
            }
        }
