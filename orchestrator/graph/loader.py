"""Graph loader - Parse and validate deployment graph files."""

import logging
from pathlib import Path

import yaml
from pydantic import ValidationError

from ..core.exceptions import GraphLoadError, OrchestratorError
from .dependency import DependencyGraph
from .models import GraphDefinition

logger = logging.getLogger(__name__)


class LoadedGraph:
    """A validated graph definition together with its dependency graph."""

    def __init__(self, definition: GraphDefinition, graph: DependencyGraph, base_dir: Path):
        self.definition = definition
        self.graph = graph
        self.base_dir = base_dir

    @property
    def name(self) -> str:
        return self.definition.name


class GraphLoader:
    """Load and validate deployment graphs from YAML files."""

    def load(self, yaml_path: str | Path) -> LoadedGraph:
        """Load a graph definition from a YAML file.

        Args:
            yaml_path: Path to graph YAML file

        Returns:
            Validated graph, manifests resolved relative to the file

        Raises:
            GraphLoadError: If loading or validation fails
        """
        yaml_path = Path(yaml_path)

        if not yaml_path.exists():
            raise GraphLoadError(f"Graph file not found: {yaml_path}")

        # 1. Parse YAML
        try:
            with open(yaml_path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise GraphLoadError(f"Invalid YAML: {e}") from e
        except (OSError, UnicodeDecodeError) as e:
            raise GraphLoadError(f"Cannot read graph file {yaml_path}: {e}") from e

        if not isinstance(data, dict):
            raise GraphLoadError("Graph file must contain a dictionary")

        # 2. Pydantic validation (schema)
        try:
            definition = GraphDefinition(**data)
        except ValidationError as e:
            raise GraphLoadError(f"Validation error:\n{e}") from e

        base_dir = yaml_path.parent.resolve()

        # 3. Manifests exist and parse
        self._validate_manifests(definition, base_dir)

        # 4. Ordering constraints
        try:
            graph = DependencyGraph.from_units(definition.units)
        except OrchestratorError as e:
            raise GraphLoadError(str(e)) from e

        logger.debug(f"Loaded graph {definition.name} with {len(graph)} units")
        return LoadedGraph(definition, graph, base_dir)

    def _validate_manifests(self, definition: GraphDefinition, base_dir: Path) -> None:
        """Check that every referenced manifest file exists and is valid YAML.

        Raises:
            GraphLoadError: If a manifest is missing or unparseable
        """
        for unit in definition.units:
            for manifest in unit.manifests:
                path = Path(manifest)
                if not path.is_absolute():
                    path = base_dir / path
                if not path.exists():
                    raise GraphLoadError(
                        f"Unit {unit.id}: manifest not found: {manifest}"
                    )
                if not path.is_file():
                    raise GraphLoadError(
                        f"Unit {unit.id}: manifest is not a file: {manifest}"
                    )

            try:
                documents = unit.load_manifests(base_dir)
            except yaml.YAMLError as e:
                raise GraphLoadError(f"Unit {unit.id}: invalid manifest YAML: {e}") from e
            except (OSError, UnicodeDecodeError, ValueError) as e:
                raise GraphLoadError(f"Unit {unit.id}: unreadable manifest: {e}") from e

            for doc in documents:
                if not isinstance(doc, dict) or "kind" not in doc or "apiVersion" not in doc:
                    raise GraphLoadError(
                        f"Unit {unit.id}: manifest documents need 'apiVersion' and 'kind'"
                    )
                if not doc.get("metadata", {}).get("name"):
                    raise GraphLoadError(
                        f"Unit {unit.id}: {doc['kind']} manifest is missing metadata.name"
                    )

    def validate_only(self, yaml_path: str | Path) -> str | None:
        """Validate a graph file and return an error message if invalid.

        Returns:
            Error message if validation fails, None if valid
        """
        try:
            self.load(yaml_path)
            return None
        except GraphLoadError as e:
            return str(e)
