"""Configuration loading.

Settings live in `.taskpilot/config.yaml` under the project root. A missing
file yields defaults; unreadable YAML or a schema violation raises ConfigError.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

import jsonschema
import yaml

from taskpilot.core.context import ContextBudget
from taskpilot.core.errors import ConfigError
from taskpilot.sandbox.engine import KNOWN_IMAGES

logger = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).parent.parent
CONFIG_DIR_NAME = ".taskpilot"
CONFIG_FILE_NAME = "config.yaml"
SCHEMA_PATH = PACKAGE_DIR / "config" / "config_schema.json"


@dataclass
class TaskPilotConfig:
    """Runtime configuration for dispatch and container tasks."""

    project_root: Path = field(default_factory=Path.cwd)

    # Command loop bounds
    max_commands: int = 200
    max_context_items: int = 50
    max_context_tokens: int = 8192

    # runCommand output ceilings
    max_output_bytes: int = 16 * 1024
    max_output_lines: int = 500

    # Must be a subset of KNOWN_IMAGES
    allowed_images: list[str] = field(default_factory=lambda: list(KNOWN_IMAGES))

    # Relative paths resolve against project_root
    knowledge_db: Path = Path(CONFIG_DIR_NAME) / "knowledge.db"

    docker_timeout: int = 300
    confirm_completion: bool = True

    def __post_init__(self) -> None:
        self.project_root = Path(self.project_root).resolve()
        self.knowledge_db = Path(self.knowledge_db)
        unknown = [image for image in self.allowed_images if image not in KNOWN_IMAGES]
        if unknown:
            raise ConfigError(
                f"Images not in the supported enumeration: {unknown}. "
                f"Supported: {list(KNOWN_IMAGES)}"
            )

    @property
    def state_dir(self) -> Path:
        return self.project_root / CONFIG_DIR_NAME

    @property
    def knowledge_db_path(self) -> Path:
        if self.knowledge_db.is_absolute():
            return self.knowledge_db
        return self.project_root / self.knowledge_db

    @property
    def context_budget(self) -> ContextBudget:
        return ContextBudget(
            max_messages=self.max_context_items,
            max_tokens=self.max_context_tokens,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["project_root"] = str(self.project_root)
        data["knowledge_db"] = str(self.knowledge_db)
        return data


def _load_schema() -> dict[str, Any]:
    with open(SCHEMA_PATH, encoding="utf-8") as f:
        return json.load(f)


def config_path_for(project_root: Path) -> Path:
    return Path(project_root) / CONFIG_DIR_NAME / CONFIG_FILE_NAME


def load_config(project_root: str | Path | None = None, path: str | Path | None = None) -> TaskPilotConfig:
    """Load configuration for a project.

    Args:
        project_root: Project directory (default: current directory)
        path: Explicit config file (default: <project_root>/.taskpilot/config.yaml)

    Raises:
        ConfigError: If the file cannot be parsed or violates the schema
    """
    root = Path(project_root or Path.cwd()).resolve()
    config_file = Path(path) if path else config_path_for(root)

    if not config_file.exists():
        logger.debug(f"No config at {config_file}, using defaults")
        return TaskPilotConfig(project_root=root)

    try:
        with open(config_file, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (yaml.YAMLError, OSError) as e:
        raise ConfigError(f"Cannot read config {config_file}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config {config_file} must be a mapping, got {type(data).__name__}")

    try:
        jsonschema.validate(data, _load_schema())
    except jsonschema.ValidationError as e:
        raise ConfigError(
            f"Config validation failed in {config_file}: {e.message}\n"
            f"Path: {' -> '.join(str(p) for p in e.absolute_path)}"
        ) from e

    configured_root = Path(data.pop("project_root", root))
    if not configured_root.is_absolute():
        configured_root = root / configured_root
    return TaskPilotConfig(project_root=configured_root, **data)


def write_default_config(project_root: str | Path) -> Path:
    """Write a default config file. Returns its path. Existing files are kept."""
    config_file = config_path_for(Path(project_root))
    if config_file.exists():
        return config_file
    config_file.parent.mkdir(parents=True, exist_ok=True)
    data = TaskPilotConfig(project_root=Path(project_root)).to_dict()
    data.pop("project_root")
    with open(config_file, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    return config_file
