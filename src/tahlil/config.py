"""Configuration handling for the expression-analysis workflow."""

import tomli
import tomli_w
from pathlib import Path
from typing import Any, Dict, List, Optional, Union


DEFAULT_ANALYSIS = {
    'method': 'ttest',
    'log_transform': False,
    'pseudocount': 1.0,
    'filter_score': 'mad',
    'n_features': None,
    'min_expression': None,
    'fdr': 0.05,
    'min_abs_effect': 0.0,
    'covariates': [],
    'equal_var': False,
}

DEFAULT_ENRICHMENT = {
    'min_drawn': 2,
    'ntotal': None,
    'min_size': 5,
    'max_size': 500,
    'alternative': 'two-sided',
    'n_permutations': 0,
    'weighted': False,
}

DEFAULT_CLUSTERING = {
    'method': 'average',
    'metric': 'pearson',
    'n_clusters': None,
}

DEFAULT_DIMRED = {
    'methods': ['pca'],
    'n_components': 2,
    'scale': False,
    'perplexity': 30.0,
    'n_neighbors': 15,
    'min_dist': 0.1,
}

DEFAULT_CLASSIFICATION = {
    'run': False,
    'n_estimators': 500,
    'cv_folds': 5,
    'max_features': 'sqrt',
}


def _with_defaults(defaults: Dict[str, Any], section: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(defaults)
    merged.update(section)
    return merged


class WorkflowConfig:
    """Configuration class for the expression-analysis workflow."""

    def __init__(self, config_path: Union[str, Path]):
        """Initialise the configuration from a TOML file.

        Args:
            config_path: Path to the TOML configuration file
        """
        self.config_path = config_path

        try:
            with open(config_path, "rb") as f:
                self.config = tomli.load(f)
        except FileNotFoundError:
            raise ValueError(f"Error loading configuration file: {config_path} does not exist")
        except Exception as e:
            raise ValueError(f"Error loading configuration file: {str(e)}")

        required_sections = ['input', 'output', 'analysis']
        missing_sections = [section for section in required_sections if section not in self.config]
        if missing_sections:
            raise ValueError(f"Missing required sections in configuration: {', '.join(missing_sections)}")

        self.input_files = self.config.get("input", {})

        required_input_files = ['expression_file', 'sample_file']
        missing_files = [file for file in required_input_files if file not in self.input_files]
        if missing_files:
            raise ValueError(f"Missing required input files in configuration: {', '.join(missing_files)}")

        self.output_config = self.config.get("output", {})

        self.analysis_params = _with_defaults(DEFAULT_ANALYSIS, self.config.get("analysis", {}))
        if 'phenotype' not in self.analysis_params:
            raise ValueError("Missing required analysis parameter: phenotype")

        self.enrichment_params = _with_defaults(DEFAULT_ENRICHMENT, self.config.get("enrichment", {}))
        if self.enrichment_params['weighted'] and self.enrichment_params['n_permutations'] <= 0:
            raise ValueError("Weighted enrichment needs enrichment.n_permutations > 0")
        self.clustering_params = _with_defaults(DEFAULT_CLUSTERING, self.config.get("clustering", {}))
        self.dimred_params = _with_defaults(DEFAULT_DIMRED, self.config.get("dimred", {}))
        self.classification_params = _with_defaults(
            DEFAULT_CLASSIFICATION, self.config.get("classification", {})
        )

        # A single method name is accepted as well as a list
        methods = self.dimred_params['methods']
        if isinstance(methods, str):
            self.dimred_params['methods'] = [methods]

        self.random_seed = self.config.get("random_seed", None)

    @property
    def gene_sets_file(self) -> Optional[str]:
        """Path of the GMT gene set collection, if configured."""
        return self.input_files.get('gene_sets_file')

    def get_reduction_methods(self) -> List[str]:
        """Dimensionality reduction methods to run, lower-cased."""
        return [m.lower() for m in self.dimred_params['methods']]

    def get_output_path(self, subdir: Optional[str] = None) -> Path:
        """Get the path to the output directory or a subdirectory within it.

        Args:
            subdir: Optional subdirectory name within the output directory

        Returns:
            Path object for the requested directory
        """
        output_dir = self.output_config.get("directory", "results")
        base_path = Path(output_dir)

        if subdir:
            return base_path / subdir

        return base_path

    def save_config(self, output_path: Union[str, Path]) -> None:
        """Save the configuration to a TOML file.

        Args:
            output_path: Path to save the configuration file
        """
        with open(output_path, "wb") as f:
            tomli_w.dump(self.config, f)
