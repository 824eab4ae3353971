import abc
import enum
import typing

import pydantic
import tabulate
import yaml

import logging


logger = logging.getLogger(__name__)

OutputFormat = typing.Literal["table", "yaml", "json"]


class PydanticBaseModel(pydantic.BaseModel, abc.ABC):

    @classmethod
    @abc.abstractmethod
    def table_header(cls) -> typing.List[str]:
        pass

    @abc.abstractmethod
    def to_table_row(self) -> typing.List[str]:
        pass

    @classmethod
    def format_reprs(cls, reprs: typing.List['PydanticBaseModel'], fmt: OutputFormat = "table") -> str:
        if hasattr(cls, "sort_key"):
            reprs = sorted(reprs, key=lambda o: o.sort_key)

        if fmt in ("yaml", "json"):
            class _ModelList(pydantic.RootModel):
                root: typing.List[cls]
            root = _ModelList(root=reprs)
            json_doc = root.model_dump_json(indent=2)
            if fmt == "json":
                return json_doc
            return yaml.safe_dump(yaml.safe_load(json_doc), default_flow_style=False, sort_keys=False)
        return tabulate.tabulate([r.to_table_row() for r in reprs], headers=cls.table_header())


class OutcomeStatus(str, enum.Enum):
    WOULD_APPLY = "would-apply"
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    CONFLICT = "skipped-conflict"
    SKIPPED = "skipped"
    FAILED = "failed"


class EntityOutcome(PydanticBaseModel):
    """ What happened to one SLS network or one node's BSS boot parameters """
    service: typing.Literal["SLS", "BSS"]
    entity: str
    status: OutcomeStatus
    changes: int = 0
    conflicts: int = 0
    detail: str = ""

    @classmethod
    def table_header(cls) -> typing.List[str]:
        return ["SERVICE", "ENTITY", "STATUS", "CHANGES", "CONFLICTS", "DETAIL"]

    def to_table_row(self) -> typing.List[str]:
        return [self.service, self.entity, self.status.value, str(self.changes), str(self.conflicts), self.detail]


class ConflictRepr(PydanticBaseModel):
    entity: str
    field: str
    existing: str
    proposed: typing.Optional[str] = None

    @classmethod
    def table_header(cls) -> typing.List[str]:
        return ["ENTITY", "FIELD", "EXISTING", "PROPOSED"]

    def to_table_row(self) -> typing.List[str]:
        return [self.entity, self.field, self.existing, self.proposed or ""]


class RunSummary(pydantic.BaseModel):
    state: str
    commit: bool
    remove: bool
    force: bool
    conflicts_found: bool
    backup_dir: str
    backups: typing.List[str] = []
    errors: typing.List[str] = []
    outcomes: typing.List[EntityOutcome] = []
    conflicts: typing.List[ConflictRepr] = []

    def render(self, fmt: OutputFormat = "table") -> str:
        if fmt == "json":
            return self.model_dump_json(indent=2)
        if fmt == "yaml":
            doc = yaml.safe_load(self.model_dump_json())
            return yaml.safe_dump(doc, default_flow_style=False, sort_keys=False)

        sections = []
        if self.outcomes:
            sections.append(EntityOutcome.format_reprs(self.outcomes))
        if self.conflicts:
            sections.append("Fields left unchanged because they already held a value:\n"
                            + ConflictRepr.format_reprs(self.conflicts))
        for e in self.errors:
            sections.append(f"ERROR: {e}")
        sections.append(f"Backups: {self.backup_dir}")
        return "\n\n".join(sections)
