from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

ENV_PREFIX = "UPSCALE_"
CONFIG_FILE_ENV = "UPSCALE_CONFIG"

_PLATFORM_EXECUTABLES = {
    "win32": "./realesrgan-ncnn-windows/realesrgan-ncnn-vulkan.exe",
    "darwin": "./realesrgan-ncnn-macos/realesrgan-ncnn-vulkan",
}
_DEFAULT_EXECUTABLE = "./realesrgan-ncnn-ubuntu/realesrgan-ncnn-vulkan"


def default_executable(platform: str = sys.platform) -> str:
    return _PLATFORM_EXECUTABLES.get(platform, _DEFAULT_EXECUTABLE)


def _defaults() -> Dict[str, Any]:
    return {
        "cache_dir": "./cache",
        "executable": default_executable(),
        "gpu_index": 0,
        "scale": 2,
        "default_extension": ".png",
        "chunk_size": 64 * 1024,
        "merge_stderr": False,
        "job_ttl_seconds": 24 * 60 * 60,
        "eviction_interval_seconds": 300,
        "cors_origins": ["*"],
        "log_level": "INFO",
    }


def _split_origins(value: str) -> List[str]:
    return [origin.strip() for origin in value.split(",") if origin.strip()]


def env_overrides(environ: Optional[Dict[str, str]] = None) -> DictConfig:
    """
    Collect ``UPSCALE_<KEY>`` environment variables for known config keys.

    Values are parsed with OmegaConf's dotlist grammar so ``UPSCALE_SCALE=4``
    becomes an int and ``UPSCALE_MERGE_STDERR=true`` a bool.
    """
    environ = os.environ if environ is None else environ
    dotlist: List[str] = []
    origins: Optional[List[str]] = None
    for key in _defaults():
        value = environ.get(f"{ENV_PREFIX}{key.upper()}")
        if value is None or value == "":
            continue
        if key == "cors_origins":
            origins = _split_origins(value)
        else:
            dotlist.append(f"{key}={value}")

    config = OmegaConf.from_dotlist(dotlist)
    if origins is not None:
        config.cors_origins = origins
    return config


def load_settings(overrides: Optional[Dict[str, Any]] = None, environ: Optional[Dict[str, str]] = None) -> DictConfig:
    """
    Build the runtime configuration.

    Merge order, later wins: built-in defaults, the YAML file named by
    ``UPSCALE_CONFIG``, ``UPSCALE_*`` environment variables, then explicit
    ``overrides``. The base is in struct mode, so unknown keys raise.
    """
    if environ is None:
        load_dotenv()
        environ = dict(os.environ)

    base = OmegaConf.create(_defaults())
    OmegaConf.set_struct(base, True)

    layers: List[DictConfig] = []
    config_file = environ.get(CONFIG_FILE_ENV)
    if config_file:
        path = Path(config_file)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found at {path}")
        layers.append(OmegaConf.load(path))  # type: ignore[arg-type]
    layers.append(env_overrides(environ))
    if overrides:
        layers.append(OmegaConf.create(overrides))

    merged = DictConfig(OmegaConf.merge(base, *layers))
    if not str(merged.default_extension).startswith("."):
        merged.default_extension = f".{merged.default_extension}"
    return merged
