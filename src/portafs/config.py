"""
Portafs Configuration

Default settings, tool-path variables, and the merge rules that combine
them with caller-supplied configuration.
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml

from portafs.errors import ConfigurationError
from portafs.release import __version__


# Environment variable naming a YAML configuration file
CONFIG_ENV_VAR = "PORTAFS_CONFIG"


def make_defaults() -> Dict[str, Any]:
    """
    Build a fresh copy of the default configuration.

    Attributes:
        variables: Command names/paths of the external tools used by the
            tool fallback layers
        verbose: Log every capability call and spawned command
        check_certificates: Verify TLS certificates (also for wget/curl)
        cache_timeout: Seconds a successful download stays fresh
        cache_fail_timeout: Seconds a failed download is replayed from cache
        connection_timeout: Per-attempt network timeout (0 = backend default)
        user_agent: User-Agent header prefix
        show_downloads: Print download progress to stderr
        downloader: Force "wget" or "curl" (None = autodetect)
        md5checker: Force "md5sum", "openssl" or "md5" (None = autodetect)
    """
    return {
        "variables": {
            "MD5SUM": "md5sum",
            "OPENSSL": "openssl",
            "MD5": "md5",

            "WGET": "wget",
            "CURL": "curl",

            "PWD": "pwd",
            "LS": "ls",

            "MKDIR": "mkdir",
            "RMDIR": "rmdir",
            "CP": "cp",
            "RM": "rm",
            "FIND": "find",

            "ZIP": "zip",
            "UNZIP": "unzip -n",

            "CHMOD": "chmod",
            "TOUCH": "touch",

            "MKTEMP": "mktemp",
            "SEVENZ": "7z",
            "ICACLS": "icacls",

            "WGETNOCERTFLAG": "",
            "CURLNOCERTFLAG": "",

            "TEST": "test",
        },
        "verbose": False,
        "check_certificates": True,
        "cache_timeout": 60,
        "cache_fail_timeout": 86400,  # 1 day
        "connection_timeout": 30,
        "user_agent": f"portafs/{__version__}",
        "show_downloads": False,
        "downloader": None,
        "md5checker": None,
    }


def deep_merge_under(dst: Dict[str, Any], src: Mapping[str, Any]) -> None:
    """
    Merge ``src`` below ``dst`` in place.

    Keys already present in ``dst`` are never replaced; nested mappings
    are merged recursively.
    """
    for key, value in src.items():
        if isinstance(value, Mapping):
            if key not in dst or dst[key] is None:
                dst[key] = {}
            if isinstance(dst[key], dict):
                deep_merge_under(dst[key], value)
        elif key not in dst:
            dst[key] = copy.deepcopy(value)


def merge_defaults(config: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """
    Return a copy of ``config`` with the defaults merged underneath.

    Raises:
        ConfigurationError: If config is not a mapping
    """
    if config is None:
        config = {}
    if not isinstance(config, Mapping):
        raise ConfigurationError(
            f"expected a mapping, got {type(config).__name__}", argument="config"
        )
    variables = config.get("variables")
    if variables is not None and not isinstance(variables, Mapping):
        raise ConfigurationError(
            f"expected a mapping, got {type(variables).__name__}", argument="variables"
        )

    merged = copy.deepcopy(dict(config))
    deep_merge_under(merged, make_defaults())
    return merged


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a configuration mapping from a YAML file.

    An empty file yields an empty mapping. Defaults are not merged here;
    that happens when the configuration is handed to Registry.resolve().

    Raises:
        ConfigurationError: If the file cannot be read or parsed, or the
            document is not a mapping
    """
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigurationError(f"cannot read {path}", details=str(e)) from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"cannot parse {path}", details=str(e)) from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(
            f"{path} must contain a mapping, got {type(data).__name__}"
        )
    return data


def config_from_environment() -> Dict[str, Any]:
    """Load the file named by PORTAFS_CONFIG, or return an empty mapping."""
    path = os.environ.get(CONFIG_ENV_VAR)
    if not path:
        return {}
    return load_config(path)
