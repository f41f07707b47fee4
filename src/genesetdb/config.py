"""Configuration handling for gene set enrichment runs."""

import tomli
import tomli_w
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .keys import DEFAULT_SEP


class EnrichmentConfig:
    """Configuration class for gene set enrichment runs."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None, registry=None):
        """Initialise the configuration from a TOML file.

        Every section is optional, so a config without a file uses the
        defaults throughout.

        Args:
            config_path: Path to the TOML configuration file
            registry: Optional MethodRegistry used to check the method names
        """
        self.config_path = config_path

        if config_path is None:
            self.config: Dict[str, Any] = {}
        else:
            try:
                with open(config_path, "rb") as f:
                    self.config = tomli.load(f)
            except FileNotFoundError:
                raise ValueError(f"Error loading configuration file: {config_path} does not exist")
            except Exception as e:
                raise ValueError(f"Error loading configuration file: {str(e)}")

        self._parse()
        self.validate(registry)

    @classmethod
    def from_dict(cls, config: Dict[str, Any], registry=None) -> "EnrichmentConfig":
        """Build a configuration from an already parsed mapping."""
        obj = cls.__new__(cls)
        obj.config_path = None
        obj.config = dict(config)
        obj._parse()
        obj.validate(registry)
        return obj

    def _parse(self):
        conform = self.config.get("conform", {})
        self.min_set_size = conform.get("min_set_size", 1)
        self.max_set_size = conform.get("max_set_size", None)
        self.min_match_fraction = conform.get("min_match_fraction", 0.05)

        self.sep = self.config.get("keys", {}).get("sep", DEFAULT_SEP)

        self.analysis_params = self.config.get("analysis", {})
        methods = self.analysis_params.get("methods", ["ora"])
        self.methods: List[str] = [methods] if isinstance(methods, str) else list(methods)
        self.num_threads = self.analysis_params.get("num_threads", 1)
        self.padj_method = self.analysis_params.get("padj_method", "fdr_bh")

        self.method_params: Dict[str, Dict[str, Any]] = self.config.get("methods", {})
        self.output_config = self.config.get("output", {})

    def validate(self, registry=None) -> None:
        """Check the parsed values, raising ValueError on the first problem found."""
        if not isinstance(self.min_set_size, int) or self.min_set_size < 0:
            raise ValueError("Invalid configuration: min_set_size must be a non-negative integer")
        if self.max_set_size is not None:
            if not isinstance(self.max_set_size, int) or self.max_set_size < self.min_set_size:
                raise ValueError(
                    f"Invalid configuration: max_set_size must be an integer >= min_set_size "
                    f"({self.min_set_size})"
                )
        if not 0 <= self.min_match_fraction <= 1:
            raise ValueError("Invalid configuration: min_match_fraction must be within [0, 1]")
        if not self.sep:
            raise ValueError("Invalid configuration: key separator cannot be empty")
        if not self.methods:
            raise ValueError("Invalid configuration: at least one analysis method is required")
        if not isinstance(self.num_threads, int) or self.num_threads < 1:
            raise ValueError("Invalid configuration: num_threads must be a positive integer")
        if registry is not None:
            unknown = [m for m in self.methods if m not in registry]
            if unknown:
                raise ValueError(
                    f"Invalid configuration: unknown enrichment methods: {', '.join(unknown)}"
                )

    @property
    def conform_params(self) -> Dict[str, Any]:
        """Keyword arguments for ``GeneSetDb.conform``."""
        return {
            "min_set_size": self.min_set_size,
            "max_set_size": self.max_set_size,
            "min_match_fraction": self.min_match_fraction,
        }

    def get_method_params(self, method: str) -> Dict[str, Any]:
        return dict(self.method_params.get(method, {}))

    def get_output_path(self, subdir: Optional[str] = None) -> Path:
        """Get the path to the output directory or a subdirectory within it.

        Args:
            subdir: Optional subdirectory name within the output directory

        Returns:
            Path object for the requested directory
        """
        base_path = Path(self.output_config.get("output_dir", "results"))
        if subdir:
            return base_path / subdir
        return base_path

    @property
    def log_dir(self) -> Optional[str]:
        return self.output_config.get("log_dir")

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the configuration to a TOML file.

        Args:
            output_path: Path to save the configuration file
        """
        with open(output_path, "wb") as f:
            tomli_w.dump(self.config, f)
