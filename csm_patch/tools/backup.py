import datetime
import json
import logging
import pathlib
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Union

import pydantic

from csm_patch.common.constants import RUN_TIMESTAMP_FORMAT
from csm_patch.common.models import wire_dump

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def run_timestamp(now: Optional[datetime.datetime] = None) -> str:
    return (now or datetime.datetime.now()).strftime(RUN_TIMESTAMP_FORMAT)


@dataclass(frozen=True)
class BackupArtifact:
    name: str
    timestamp: str
    path: pathlib.Path


class BackupWriter:
    """
    Writes JSON snapshots of service state to `<directory>/<name>-<timestamp>.json`. Payloads are dumped in the
    schema the owning service accepts so a snapshot can be resubmitted by hand to recover from a failed run.
    Artifacts are write-once, writing the same name twice in one run is an error.
    """

    def __init__(self, directory: Union[str, pathlib.Path], timestamp: Optional[str] = None):
        self.timestamp = timestamp or run_timestamp()
        self.directory = pathlib.Path(directory)
        self.artifacts: List[BackupArtifact] = []

    def path_for(self, name: str) -> pathlib.Path:
        return self.directory / f"{_UNSAFE.sub('_', name)}-{self.timestamp}.json"

    def write(self, name: str, payload: Any) -> pathlib.Path:
        if isinstance(payload, pydantic.BaseModel):
            payload = wire_dump(payload)
        path = self.path_for(name)
        self.directory.mkdir(parents=True, exist_ok=True)
        with open(path, "x") as f:
            json.dump(payload, f, indent=2)
        self.artifacts.append(BackupArtifact(name, self.timestamp, path))
        logger.info(f"wrote backup {path}")
        return path
