"""
Static YAML configuration: server options, database switch, encryption key,
the persisted active cluster and file-declared clusters.
"""
from __future__ import annotations

import os
import tempfile
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from .logging import get_logger


logger = get_logger(__name__)

IN_CLUSTER = "in-cluster"
DEFAULT_KUBECONFIG = "default"


class ServerConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    port: int = 8080
    mode: str = "debug"
    read_timeout: int = 30
    write_timeout: int = 30
    active_cluster: str = Field(
        default="",
        validation_alias=AliasChoices("activeCluster", "activeClusterID", "active_cluster"),
    )
    encryption_key: str = Field(
        default="",
        validation_alias=AliasChoices("encryptionKey", "encryption_key"),
        repr=False,
    )

    @field_validator("active_cluster", "encryption_key", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class DatabaseConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    enabled: bool = False
    url: str = "sqlite:///./kubedeck.db"


class ClusterDeclaration(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = ""
    name: str
    config_path: str = Field(default="", validation_alias=AliasChoices("config_path", "configPath", "kubeconfig"))
    provider: str = ""
    environment: str = ""
    region: str = ""
    description: str = ""
    is_active: bool = Field(default=False, validation_alias=AliasChoices("is_active", "isActive", "isDefault"))
    labels: Dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _name_required(cls, value: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValueError("cluster declaration requires a name")
        return value

    @field_validator("id", "config_path", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> Any:
        return "" if value is None else str(value).strip()

    @field_validator("labels", mode="before")
    @classmethod
    def _labels(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        return value


class FileConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    server: ServerConfig = Field(default_factory=ServerConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    clusters: List[ClusterDeclaration] = Field(default_factory=list)

    # where the file was read from; not part of the document
    path: Optional[str] = Field(default=None, exclude=True)

    @model_validator(mode="after")
    def _unique_names(self) -> "FileConfig":
        seen = set()
        for decl in self.clusters:
            if decl.name in seen:
                raise ValueError(f"cluster '{decl.name}' is declared more than once")
            seen.add(decl.name)
        return self

    @classmethod
    def load(cls, path: str | os.PathLike | None) -> "FileConfig":
        """Read the YAML file; a missing file yields defaults bound to that path."""
        if not path:
            return cls()
        file_path = Path(path)
        if not file_path.exists():
            logger.warning("configuration file %s not found, using defaults", file_path)
            return cls(path=str(file_path))

        with file_path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, dict):
            raise ValueError(f"configuration file {file_path} must contain a mapping")

        # legacy location of the active cluster id
        if "activeCluster" in data and isinstance(data.get("server"), dict):
            data["server"].setdefault("activeCluster", data["activeCluster"])
        elif "activeCluster" in data:
            data["server"] = {"activeCluster": data["activeCluster"]}

        config = cls.model_validate(data)
        config.path = str(file_path)
        if not config.clusters:
            logger.info("configuration file %s declares no clusters", file_path)
        logger.info("configuration loaded from %s (%d declared clusters)", file_path, len(config.clusters))
        return config

    @property
    def base_dir(self) -> Path:
        return Path(self.path).resolve().parent if self.path else Path.cwd()


_save_lock = threading.Lock()


def save_active_cluster(path: str | os.PathLike, cluster_id: Optional[str]) -> None:
    """Persist ``server.activeCluster`` leaving every other key untouched.

    The file is replaced atomically so a crash never leaves it half written.
    """
    file_path = Path(path)
    with _save_lock:
        data: Dict[str, Any] = {}
        if file_path.exists():
            with file_path.open("r", encoding="utf-8") as fh:
                data = yaml.safe_load(fh) or {}
        server = data.get("server")
        if not isinstance(server, dict):
            server = {}
        server.pop("activeClusterID", None)
        server["activeCluster"] = cluster_id or ""
        data["server"] = server
        data.pop("activeCluster", None)

        file_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".config-", suffix=".yaml", dir=str(file_path.parent))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                yaml.safe_dump(data, fh, sort_keys=False, allow_unicode=True)
            os.replace(tmp_path, file_path)
        except BaseException:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
    logger.info("active cluster persisted to %s", file_path)
