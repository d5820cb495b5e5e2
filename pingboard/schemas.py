from pydantic import BaseModel, ConfigDict, StringConstraints, field_validator
from typing import Annotated, List, Optional

from .services.probes import DEFAULT_CHECK_URL

NameStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

# non-positive values fall back to these
DEFAULTS = {
    "oldest_history": 60,
    "slow_threshold": 5000,
    "retry_count": 3,
    "retry_interval": 15.0,
    "probe_interval": 60.0,
    "connect_timeout": 5.0,
    "response_timeout": 10.0,
}

class ServerEntry(BaseModel):
    name: NameStr
    url: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

class GroupEntry(BaseModel):
    name: NameStr
    servers: List[ServerEntry] = []

    @field_validator("servers")
    @classmethod
    def _unique_names(cls, servers: List[ServerEntry]) -> List[ServerEntry]:
        seen = set()
        for s in servers:
            if s.name in seen:
                raise ValueError(f"server name {s.name} must be group unique")
            seen.add(s.name)
        return servers

class MonitorConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    http_port: Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
    oldest_history: int = DEFAULTS["oldest_history"]
    slow_threshold: int = DEFAULTS["slow_threshold"]
    show_rt: bool = False
    check_url: str = DEFAULT_CHECK_URL
    retry_count: int = DEFAULTS["retry_count"]
    retry_interval: float = DEFAULTS["retry_interval"]
    probe_interval: float = DEFAULTS["probe_interval"]
    connect_timeout: float = DEFAULTS["connect_timeout"]
    response_timeout: float = DEFAULTS["response_timeout"]
    groups: List[GroupEntry] = []

    @field_validator("http_port", mode="before")
    @classmethod
    def _port_as_str(cls, v):
        return str(v) if isinstance(v, int) else v

    @field_validator("http_port")
    @classmethod
    def _port_is_numeric(cls, v: str) -> str:
        if not v.rpartition(":")[2].isdigit():
            raise ValueError(f"invalid http_port {v!r}")
        return v

    @field_validator(*DEFAULTS.keys(), mode="before")
    @classmethod
    def _default_if_not_positive(cls, v, info):
        if v is None or (isinstance(v, (int, float)) and v <= 0):
            return DEFAULTS[info.field_name]
        return v

    @field_validator("check_url", mode="before")
    @classmethod
    def _default_check_url(cls, v):
        if isinstance(v, str):
            v = v.strip()
        return v or DEFAULT_CHECK_URL

    @field_validator("groups", mode="before")
    @classmethod
    def _groups_or_empty(cls, v):
        return v or []

    def listen_address(self) -> tuple[str, int]:
        """``8080``, ``:8080`` and ``0.0.0.0:8080`` all listen on every interface."""
        host, _, port = self.http_port.rpartition(":")
        return host or "0.0.0.0", int(port)

class SeriesOut(BaseModel):
    key: str
    name: str
    group: str

class RowOut(BaseModel):
    ts: int
    values: List[int]

class HistoryOut(BaseModel):
    generated_at: Optional[float] = None
    series: List[SeriesOut]
    rows: List[RowOut]
