"""settings for thinkflow.

stored as json in the data directory, with environment overrides for secrets.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)


# --- configuration ---

DEFAULT_EDGE_COLOR = "#fed7aa"
DEFAULT_EDGE_TYPE = "default"
SETTINGS_FILE = "settings.json"
DEFAULT_DEBOUNCE_SECONDS = 3.0

ENV_DATA_DIR = "THINKFLOW_DATA_DIR"
ENV_API_KEY = "THINKFLOW_API_KEY"
ENV_SUPABASE_URL = "THINKFLOW_SUPABASE_URL"
ENV_SUPABASE_KEY = "THINKFLOW_SUPABASE_KEY"
ENV_SUPABASE_USER_ID = "THINKFLOW_SUPABASE_USER_ID"


@dataclass
class EndpointConfig:
    """one ai endpoint: full url, model name, bearer key."""

    base_url: str = ""
    model: str = ""
    api_key: str = ""


DEFAULT_CHAT = EndpointConfig(
    base_url="https://api.openai.com/v1/chat/completions",
    model="gpt-4o-mini",
)
DEFAULT_IMAGE = EndpointConfig(
    base_url="https://api.openai.com/v1/images/generations",
    model="dall-e-3",
)


@dataclass
class ApiConfig:
    """default endpoints or user-supplied custom ones."""

    mode: str = "default"  # "default" or "custom"
    chat: EndpointConfig = field(default_factory=EndpointConfig)
    image: EndpointConfig = field(default_factory=EndpointConfig)

    def resolve_chat(self) -> EndpointConfig:
        return self._resolve(self.chat, DEFAULT_CHAT)

    def resolve_image(self) -> EndpointConfig:
        return self._resolve(self.image, DEFAULT_IMAGE)

    def _resolve(self, custom: EndpointConfig, default: EndpointConfig) -> EndpointConfig:
        if self.mode == "custom":
            return custom
        # default mode: fall back to the environment key
        return EndpointConfig(
            base_url=default.base_url,
            model=default.model,
            api_key=default.api_key or os.environ.get(ENV_API_KEY, ""),
        )


@dataclass
class CanvasConfig:
    """canvas behaviour toggles."""

    edge_color: str = DEFAULT_EDGE_COLOR
    edge_type: str = DEFAULT_EDGE_TYPE
    hierarchical_dragging: bool = True
    snap_to_grid: bool = True
    snap_grid: tuple[float, float] = (16.0, 16.0)
    snap_to_alignment: bool = True
    show_alignment_guides: bool = True


@dataclass
class Settings:
    """all persisted settings."""

    provider: str = "openai"  # "openai", "claude" or "mock"
    api: ApiConfig = field(default_factory=ApiConfig)
    canvas: CanvasConfig = field(default_factory=CanvasConfig)
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_user_id: str = ""  # owner of projects created from here
    debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS

    @property
    def has_remote(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    def to_dict(self) -> dict:
        d = asdict(self)
        d["canvas"]["snap_grid"] = list(self.canvas.snap_grid)
        return d

    @classmethod
    def from_dict(cls, d: dict) -> Settings:
        api = d.get("api", {})
        canvas = dict(d.get("canvas", {}))
        if "snap_grid" in canvas:
            canvas["snap_grid"] = tuple(canvas["snap_grid"])
        return cls(
            provider=d.get("provider", "openai"),
            api=ApiConfig(
                mode=api.get("mode", "default"),
                chat=EndpointConfig(**api.get("chat", {})),
                image=EndpointConfig(**api.get("image", {})),
            ),
            canvas=CanvasConfig(**canvas),
            supabase_url=d.get("supabase_url", ""),
            supabase_key=d.get("supabase_key", ""),
            supabase_user_id=d.get("supabase_user_id", ""),
            debounce_seconds=d.get("debounce_seconds", DEFAULT_DEBOUNCE_SECONDS),
        )

    def apply_env(self) -> Settings:
        """environment wins over the file for remote credentials."""
        self.supabase_url = os.environ.get(ENV_SUPABASE_URL, self.supabase_url)
        self.supabase_key = os.environ.get(ENV_SUPABASE_KEY, self.supabase_key)
        self.supabase_user_id = os.environ.get(ENV_SUPABASE_USER_ID, self.supabase_user_id)
        return self

    def save(self, path: Optional[Path] = None) -> None:
        path = path or get_data_dir() / SETTINGS_FILE
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: Optional[Path] = None) -> Settings:
        """load settings, falling back to defaults when missing or invalid."""
        path = path or get_data_dir() / SETTINGS_FILE
        if not path.exists():
            return cls().apply_env()
        try:
            with open(path) as f:
                return cls.from_dict(json.load(f)).apply_env()
        except (json.JSONDecodeError, TypeError, KeyError) as e:
            logger.warning("ignoring invalid settings file %s: %s", path, e)
            return cls().apply_env()


def get_data_dir() -> Path:
    """get the thinkflow data directory."""
    data_dir = Path(os.environ.get(ENV_DATA_DIR) or Path.home() / ".thinkflow")
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir
