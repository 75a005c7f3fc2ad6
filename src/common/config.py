"""
Run Configuration
=================

Two layers:
- ``Settings``: environment-level defaults (log level, results dir, workers)
  read from ``QUANTCOMPARE_*`` variables or a ``.env`` file.
- ``AnalysisConfig``: the YAML run description (inputs per tool, which
  comparisons to run), validated on load.
"""

from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings


class Tool(str, Enum):
    RSEM = "rsem"
    STRINGTIE = "stringtie"
    KALLISTO = "kallisto"


class FeatureLevel(str, Enum):
    GENE = "gene"
    TRANSCRIPT = "transcript"


class SampleIdStrategy(str, Enum):
    PREFIX = "prefix"
    PARENT_DIR = "parent_dir"
    RUN_ACCESSION = "run_accession"


class Settings(BaseSettings):
    """Settings loaded from environment variables"""

    LOG_LEVEL: str = "INFO"
    RESULTS_DIR: Path = Path("results")
    N_JOBS: int = 1
    PLOT_FORMAT: str = "png"
    PLOT_DPI: int = 150

    class Config:
        env_prefix = "QUANTCOMPARE_"
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


class SourceConfig(BaseModel):
    """One quantification source: a tool run over a directory tree."""
    tool: Tool
    root: Path
    pattern: Optional[str] = None
    level: FeatureLevel = FeatureLevel.GENE
    sample_id: Optional[SampleIdStrategy] = None
    sample_regex: Optional[str] = None
    # StringTie only
    read_length: Optional[int] = Field(default=None, gt=0)
    # Kallisto only
    on_unmapped: str = Field(default="drop", pattern="^(drop|raise)$")
    sample_aliases: Dict[str, str] = {}

    @model_validator(mode="after")
    def check_read_length(self):
        if self.tool == Tool.STRINGTIE and self.read_length is None:
            raise ValueError("StringTie sources require an explicit read_length")
        return self


class VariantComparison(BaseModel):
    """Two pipeline variants of the same tool to compare head-to-head."""
    name: str
    source_a: str
    source_b: str
    scatter_samples: List[str] = []


class AnalysisConfig(BaseModel):
    """Validated YAML run description."""
    project: str = "quantcompare"
    results_dir: Optional[Path] = None
    transcript_gene_map: Optional[Path] = None
    sources: Dict[str, SourceConfig]
    tool_comparison: List[str] = []
    variant_comparisons: List[VariantComparison] = []
    value: str = Field(default="abundance", pattern="^(abundance|counts)$")
    n_jobs: Optional[int] = None

    @model_validator(mode="after")
    def check_references(self):
        known = set(self.sources)
        referenced = list(self.tool_comparison)
        for variant in self.variant_comparisons:
            referenced.extend([variant.source_a, variant.source_b])
        unknown = sorted(set(referenced) - known)
        if unknown:
            raise ValueError(f"Comparisons reference unknown sources: {unknown}")
        if self.tool_comparison and len(self.tool_comparison) < 2:
            raise ValueError("tool_comparison needs at least two sources")
        return self

    @classmethod
    def from_yaml(cls, path) -> "AnalysisConfig":
        path = Path(path)
        with open(path, 'r') as f:
            raw = yaml.safe_load(f) or {}

        config = cls(**raw)

        # Relative paths are resolved against the config file location
        base = path.parent
        for source in config.sources.values():
            if not source.root.is_absolute():
                source.root = (base / source.root).resolve()
        if config.transcript_gene_map is not None and not config.transcript_gene_map.is_absolute():
            config.transcript_gene_map = (base / config.transcript_gene_map).resolve()
        if config.results_dir is not None and not config.results_dir.is_absolute():
            config.results_dir = (base / config.results_dir).resolve()
        return config
