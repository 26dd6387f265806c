"""Loading of the main configuration and container declarations."""

import asyncio
import hashlib
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from hatchery.errors import ConfigurationError
from hatchery.models.config import HatcheryConfig
from hatchery.models.container import ContainerSpec
from hatchery.utils.templates import merge_dicts


logger = logging.getLogger(__name__)

TOKEN_SECRET_ENV = "HATCHERY_TOKEN_SECRET"
CONFIG_DIR_ENV = "HATCHERY_CONFIG_DIR"


def default_config_dir() -> Path:
    """Config directory from the environment, else ./configs."""
    return Path(os.environ.get(CONFIG_DIR_ENV, "./configs"))


class ConfigManager:
    """Loads `config.yaml` and the container declarations under `containers/`.

    Each `containers/*.yaml` file holds a `containers:` mapping of hostname to
    fields. `container_defaults` in `config.yaml` is deep-merged under every
    declaration.
    """

    def __init__(self, config_dir: Path):
        """Initialize configuration manager."""
        self.config_dir = Path(config_dir)
        self.yaml = YAML(typ="safe")
        self.config: Optional[HatcheryConfig] = None
        self.container_defaults: Dict[str, Any] = {}
        self.containers: Dict[str, ContainerSpec] = {}
        self.errors: List[str] = []
        self._config_hashes: Dict[str, str] = {}

    async def load(self):
        """Load all configuration files."""
        logger.info(f"Loading configuration from {self.config_dir}")
        self.errors = []
        self._config_hashes.clear()

        await self._load_main_config()
        await self._load_containers()

        logger.info(f"Configuration loaded: {len(self.containers)} container(s)")

    async def _load_main_config(self):
        """Load main configuration file."""
        config_file = self.config_dir / "config.yaml"
        if not config_file.exists():
            raise ConfigurationError(f"Main config not found: {config_file}")

        try:
            data = await self._read_yaml(config_file) or {}
        except ValueError as e:
            raise ConfigurationError(str(e)) from e
        self.container_defaults = data.pop("container_defaults", None) or {}

        hypervisor = data.setdefault("hypervisor", {})
        if isinstance(hypervisor, dict) and not hypervisor.get("token_secret"):
            secret = os.environ.get(TOKEN_SECRET_ENV)
            if secret:
                hypervisor["token_secret"] = secret

        try:
            self.config = HatcheryConfig(**data)
            logger.debug(f"Loaded main config: {config_file}")
        except ValidationError as e:
            logger.error(f"Invalid main config: {e}")
            raise ConfigurationError(f"Invalid main config {config_file}: {e}") from e

    async def _load_containers(self):
        """Load container declarations."""
        containers_dir = self.config_dir / "containers"
        self.containers.clear()
        if not containers_dir.exists():
            logger.warning(f"Containers directory not found: {containers_dir}")
            return

        owners: Dict[int, str] = {}
        for yaml_file in sorted(containers_dir.glob("*.yaml")):
            try:
                data = await self._read_yaml(yaml_file) or {}
                for hostname, fields in (data.get("containers") or {}).items():
                    merged = merge_dicts(self.container_defaults, dict(fields or {}))
                    spec = ContainerSpec(hostname=hostname, **merged)
                    if hostname in self.containers:
                        raise ConfigurationError(f"Container {hostname} declared more than once ({yaml_file.name})")
                    if spec.vmid in owners:
                        raise ConfigurationError(
                            f"Container id {spec.vmid} declared by both {owners[spec.vmid]} and {hostname}"
                        )
                    owners[spec.vmid] = hostname
                    self.containers[hostname] = spec
                logger.debug(f"Loaded containers from {yaml_file}")
            except ConfigurationError:
                raise
            except (ValidationError, ValueError, TypeError, AttributeError) as e:
                logger.error(f"Error loading {yaml_file}: {e}")
                self.errors.append(f"{yaml_file.name}: {e}")

    async def _read_yaml(self, file_path: Path) -> Dict[str, Any]:
        """Read and parse a YAML file off the event loop."""
        content = await asyncio.to_thread(file_path.read_text)
        # Store hash for change detection
        self._config_hashes[str(file_path)] = hashlib.md5(content.encode()).hexdigest()
        try:
            return self.yaml.load(content)
        except YAMLError as e:
            raise ValueError(f"Invalid YAML in {file_path}: {e}") from e

    def has_changed(self) -> bool:
        """Check if configuration files have changed since the last load."""
        seen = set()
        for yaml_file in self.config_dir.rglob("*.yaml"):
            seen.add(str(yaml_file))
            current_hash = hashlib.md5(yaml_file.read_text().encode()).hexdigest()
            if self._config_hashes.get(str(yaml_file)) != current_hash:
                return True
        return seen != set(self._config_hashes)

    def get_container_spec(self, hostname: str) -> Optional[ContainerSpec]:
        """Get container specification by hostname."""
        return self.containers.get(hostname)

    def select(self, vmids: Optional[List[int]] = None) -> List[ContainerSpec]:
        """Declared specs ordered by id, optionally restricted to `vmids`."""
        specs = sorted(self.containers.values(), key=lambda s: s.vmid)
        if vmids:
            wanted = set(vmids)
            unknown = wanted - {s.vmid for s in specs}
            if unknown:
                raise ConfigurationError(f"Unknown container id(s): {', '.join(map(str, sorted(unknown)))}")
            specs = [s for s in specs if s.vmid in wanted]
        return specs
