from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class AnnotationItemDTO(BaseModel):
    text: Optional[str] = None
    markup: Optional[str] = None
    interpretAs: Optional[str] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "AnnotationItemDTO":
        if (self.text is None) == (self.markup is None):
            raise ValueError("annotation item needs exactly one of text or markup")
        if self.interpretAs is not None and self.markup is None:
            raise ValueError("interpretAs only applies to markup")
        return self


class AnnotationDTO(BaseModel):
    annotation: List[AnnotationItemDTO]


class ReplacementDTO(BaseModel):
    model_config = ConfigDict(extra="ignore")

    value: str


class RuleDTO(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    description: Optional[str] = None


class MatchDTO(BaseModel):
    model_config = ConfigDict(extra="ignore")

    message: str
    shortMessage: str = ""
    offset: int = Field(ge=0)
    length: int = Field(ge=0)
    replacements: List[ReplacementDTO] = []
    rule: RuleDTO


class CheckResponseDTO(BaseModel):
    model_config = ConfigDict(extra="ignore")

    matches: List[MatchDTO] = []


class ServiceConfigDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    host: str = "localhost"
    port: int = Field(default=8081, gt=0, lt=65536)
    language: str = "en-US"
    executable: str = "languagetool"
    container_runtimes: List[str] = ["podman", "docker"]
    container_name: str = "marginalia-languagetool"
    container_image: str = "docker.io/erikvl87/languagetool"
    container_port: int = Field(default=8010, gt=0, lt=65536)
    startup_timeout_seconds: float = Field(default=60.0, gt=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    max_segment_bytes: int = Field(default=1024, gt=0)
    max_replacements: int = Field(default=5, ge=0)
    severity: str = "hint"

    @field_validator("severity")
    @classmethod
    def _known_severity(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in {"error", "warning", "information", "hint"}:
            raise ValueError(f"unknown severity {value!r}")
        return normalized


class LanguageConfigDTO(BaseModel):
    model_config = ConfigDict(extra="forbid")

    grammar: Optional[str] = None
    library: Optional[str] = None
    symbol: Optional[str] = None
    search_paths: List[str] = []
    queries: List[str]

    @field_validator("queries")
    @classmethod
    def _non_empty_queries(cls, value: List[str]) -> List[str]:
        patterns = [item for item in value if item.strip()]
        if not patterns:
            raise ValueError("at least one query pattern is required")
        return patterns


class DiagnosticDTO(BaseModel):
    path: str
    line: int
    col: int
    end_line: int
    end_col: int
    code: str
    message: str
    fixes: List[str] = []


class CheckReportDTO(BaseModel):
    language: str
    uri: str
    version: int
    diagnostics: List[DiagnosticDTO] = []
    stats: Dict[str, int] = {}
