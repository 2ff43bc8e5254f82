# storyflow/app_config.py
from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import commentjson
from dotenv import load_dotenv

load_dotenv()

CONFIG_PATH = os.getenv("STORYFLOW_CONFIG_PATH", "storyflow_config.jsonc")

_REQUIRED_SECTIONS = ("AUTOSAVE", "SPEECH", "AI", "HISTORY")


def _load_app_config(path: str | None = None) -> Dict[str, Any]:
    """
    Load the runtime configuration from a JSON-with-comments file.
    Fails fast if the file or required top-level keys are missing.
    """
    cfg_path = Path(path or CONFIG_PATH)
    if not cfg_path.is_absolute() and not cfg_path.exists():
        # fall back to the copy shipped next to the package
        cfg_path = Path(__file__).resolve().parent.parent / cfg_path.name
    if not cfg_path.exists():
        raise FileNotFoundError(f"StoryFlow config file not found at '{cfg_path}'. ")

    with cfg_path.open("r", encoding="utf-8") as f:
        data = commentjson.load(f)

    for key in _REQUIRED_SECTIONS:
        if key not in data or not isinstance(data[key], dict):
            raise ValueError(f"StoryFlow config missing or invalid key: {key}")

    return data


_APP_CONFIG = _load_app_config()
AUTOSAVE_CONFIG: Dict[str, Any] = _APP_CONFIG["AUTOSAVE"]
SPEECH_CONFIG: Dict[str, Any] = _APP_CONFIG["SPEECH"]
AI_CONFIG: Dict[str, Any] = _APP_CONFIG["AI"]
HISTORY_CONFIG: Dict[str, Any] = _APP_CONFIG["HISTORY"]

DEFAULT_AUTOSAVE_INTERVAL = float(AUTOSAVE_CONFIG.get("default_interval", 30))
MIN_AUTOSAVE_INTERVAL = float(AUTOSAVE_CONFIG.get("min_interval", 5))
MAX_AUTOSAVE_INTERVAL = float(AUTOSAVE_CONFIG.get("max_interval", 120))
SAVE_TIMEOUT = float(AUTOSAVE_CONFIG.get("save_timeout", 30))

SPEECH_RESTART_DELAY = float(SPEECH_CONFIG.get("restart_delay", 0.5))
SPEECH_LANGUAGE = str(SPEECH_CONFIG.get("language", "en-US"))

AI_TIMEOUT = float(AI_CONFIG.get("timeout", 30))
AI_RETRIES = int(AI_CONFIG.get("retries", 2))

# --- Environment ---
PROJECT_ID = os.getenv("GOOGLE_CLOUD_PROJECT", "your-project-id")
REGION = os.getenv("GOOGLE_CLOUD_REGION", "us-central1")


#! MODEL SELECTION

def model_for_feature(feature: str) -> str:
    models = AI_CONFIG.get("models") or {}
    return models.get(feature) or AI_CONFIG.get("default_model", "gpt-4o")


def is_openai_model(model_name) -> bool:
    prefixes = ("gpt-", "gpt4", "o1", "o3", "o4")
    return any(model_name.startswith(p) for p in prefixes)


def parse_model_name(raw: str) -> Tuple[str, Dict[str, Any]]:
    """Parse strings like:
        - 'gpt-4o'
        - 'gpt-4o_json'
        - 'gpt-4o_t0.7'
    into (base_model, openai_params).
    """
    raw = (raw or "").strip()
    if not raw:
        raise ValueError(f"parse_model_name: No Model Name passed. ")

    parts = raw.split("_")
    base = parts[0]
    if len(parts) <= 1:
        return base, {}

    temperature: Optional[float] = None
    json_mode = False

    unknown = []
    for tok in parts[1:]:
        t = tok.strip().lower()
        if not t:
            continue
        if t == "json":
            json_mode = True
            continue
        if t.startswith("t") and temperature is None:
            try:
                temperature = float(t[1:])
                continue
            except ValueError:
                pass
        unknown.append(t)

    if unknown:
        raise ValueError(f"parse_model_name: Unknown model suffix token(s) {unknown} in '{raw}'. ")

    params: Dict[str, Any] = {}
    if temperature is not None:
        params["temperature"] = temperature
    if json_mode:
        params["response_format"] = {"type": "json_object"}
    return base, params
