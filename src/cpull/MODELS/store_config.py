# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Store configuration: where image and layer records live, and which platform to pull.
"""
import base64
import binascii
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, ValidationError

from ..exceptions import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_HOME = Path.home() / ".cpull"
DEFAULT_CONFIG_FILE = DEFAULT_HOME / "config.yml"

ENV_IMAGE_ROOT = "CPULL_IMAGE_ROOT"
ENV_LAYER_ROOT = "CPULL_LAYER_ROOT"
ENV_DOCKER_CONFIG = "DOCKER_CONFIG"

# Registry names that all mean Docker Hub
DOCKER_HUB_ALIASES = ("index.docker.io", "registry-1.docker.io", "registry.hub.docker.com")


class RegistryCredentials(BaseModel):
    """Login for one registry."""
    username: str
    password: str


class StoreConfig(BaseModel):
    """
    Locations of the two stores and the registry settings used when pulling.
    """
    image_root: Path = DEFAULT_HOME / "imagedb"
    layer_root: Path = DEFAULT_HOME / "layerdb"

    platform_os: str = "linux"
    platform_arch: Optional[str] = None  # None selects the host architecture
    insecure_registries: List[str] = []

    credentials: Dict[str, RegistryCredentials] = {}  # registry host -> login
    docker_config: Optional[Path] = None  # config.json with "auths"; None uses $DOCKER_CONFIG or ~/.docker

    @classmethod
    def for_root(cls, root: Path, **kwargs) -> "StoreConfig":
        """Build a config with both stores under a single directory."""
        root = Path(root)
        return cls(image_root=root / "imagedb", layer_root=root / "layerdb", **kwargs)


def load_config(path: Optional[str] = None,
                overrides: Optional[Dict[str, Any]] = None) -> StoreConfig:
    """
    Load the store configuration.

    Later sources win: defaults, the YAML config file, CPULL_* environment
    variables (a .env file in the working directory is honoured), then overrides.

    :param path: Config file. Defaults to ~/.cpull/config.yml when it exists.
    :param overrides: Values given explicitly, e.g. on the command line. None values are ignored.
    :return: The merged configuration.
    """
    load_dotenv(find_dotenv(usecwd=True))

    data: Dict[str, Any] = {}
    config_path = Path(path) if path else DEFAULT_CONFIG_FILE
    if path or config_path.exists():
        data.update(_read_yaml(config_path))

    if os.environ.get(ENV_IMAGE_ROOT):
        data["image_root"] = os.environ[ENV_IMAGE_ROOT]
    if os.environ.get(ENV_LAYER_ROOT):
        data["layer_root"] = os.environ[ENV_LAYER_ROOT]

    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    try:
        config = StoreConfig(**data)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration: {e}") from e

    config.image_root = config.image_root.expanduser()
    config.layer_root = config.layer_root.expanduser()
    if config.docker_config is not None:
        config.docker_config = config.docker_config.expanduser()
    return config


def _read_yaml(config_path: Path) -> Dict[str, Any]:
    try:
        with open(config_path, 'r') as f:
            content = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read config file {config_path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"Config file {config_path} is not valid YAML: {e}") from e

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigError(f"Config file {config_path} must contain a mapping")
    return content


def registry_key(name: str) -> str:
    """
    Normalizes a registry name or URL to the host form used in image references.

    'https://index.docker.io/v1/' and the other Docker Hub names become 'docker.io'.
    """
    host = name.split("://", 1)[-1].split("/", 1)[0].lower()
    return "docker.io" if host in DOCKER_HUB_ALIASES else host


def read_docker_credentials(path: Path) -> Dict[str, RegistryCredentials]:
    """
    Reads the logins stored by 'docker login' in a Docker client config.json.

    Entries under "auths" carry either a base64 "auth" of 'username:password' or
    separate "username" and "password" fields. Entries without either, such as
    those kept by a credential helper, are ignored.

    :raises ConfigError: If the file cannot be read or is not a valid config.
    """
    try:
        with open(path, 'r') as f:
            document = json.load(f)
    except OSError as e:
        raise ConfigError(f"Cannot read Docker config {path}: {e}") from e
    except ValueError as e:
        raise ConfigError(f"Docker config {path} is not valid JSON: {e}") from e

    auths = document.get("auths", {}) if isinstance(document, dict) else None
    if not isinstance(auths, dict):
        raise ConfigError(f"Docker config {path} has no valid 'auths' mapping")

    credentials: Dict[str, RegistryCredentials] = {}
    for registry, entry in auths.items():
        if not isinstance(entry, dict):
            continue
        if entry.get("auth"):
            try:
                username, _, password = base64.b64decode(entry["auth"]).decode("utf-8").partition(":")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise ConfigError(f"Docker config {path}: bad auth for {registry}: {e}") from e
        elif entry.get("username") and entry.get("password"):
            username, password = entry["username"], entry["password"]
        else:
            logger.debug("No stored login for %s in %s", registry, path)
            continue
        credentials[registry_key(registry)] = RegistryCredentials(username=username, password=password)
    return credentials


def registry_credentials(config: StoreConfig) -> Dict[str, RegistryCredentials]:
    """
    Logins to use per registry host: Docker's stored logins, overridden by config.credentials.

    A Docker config named in the configuration must be valid. The default one is
    skipped with a warning when it is broken, and silently when it is absent.
    """
    if config.docker_config is not None:
        path, explicit = config.docker_config, True
    elif os.environ.get(ENV_DOCKER_CONFIG):
        path, explicit = Path(os.environ[ENV_DOCKER_CONFIG]).expanduser() / "config.json", False
    else:
        path, explicit = Path.home() / ".docker" / "config.json", False

    credentials: Dict[str, RegistryCredentials] = {}
    if path.exists():
        try:
            credentials.update(read_docker_credentials(path))
        except ConfigError as e:
            if explicit:
                raise
            logger.warning("Ignoring Docker logins: %s", e)
    elif explicit:
        raise ConfigError(f"Docker config {path} does not exist")

    for registry, login in config.credentials.items():
        credentials[registry_key(registry)] = login
    return credentials
