"""Filesystem notebook store.

Notebooks are read, built and serialized with nbformat, so what lands on disk
is whatever Jupyter itself would write for nbformat 4. Every append rewrites
the file through atomic_write(); a crash mid-append leaves the previous
notebook intact.
"""

import uuid
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

import nbformat
import structlog
from nbformat import v4

from waypoint.contracts.errors import NotebookError, PathConfinementViolation
from waypoint.core.fs import atomic_write
from waypoint.core.paths import ProjectPaths

logger = structlog.get_logger(__name__)

CHECKPOINT_CELL_TAG = "checkpoint"

_CELL_FACTORIES: dict[str, Callable[..., Any]] = {
    "code": v4.new_code_cell,
    "markdown": v4.new_markdown_cell,
    "raw": v4.new_raw_cell,
}


def _empty_notebook() -> Any:
    notebook = v4.new_notebook()
    notebook.metadata["kernelspec"] = {"display_name": "Python 3", "language": "python", "name": "python3"}
    notebook.metadata["language_info"] = {"name": "python", "file_extension": ".py", "mimetype": "text/x-python"}
    return notebook


def _join_source(source: list[str]) -> str:
    # Lines may or may not carry their newline; nbformat splits on write
    return "".join(line if line.endswith("\n") or i == len(source) - 1 else line + "\n" for i, line in enumerate(source))


class FilesystemNotebookStore:
    """NotebookStore writing .ipynb files under the project root.

    Paths passed to append_cell/read_cells are project-relative. Existing
    notebooks must be valid nbformat 4; older 4.x minors are upgraded in
    memory (which assigns cell IDs) and written back at the current minor.
    """

    def __init__(self, paths: ProjectPaths) -> None:
        self._paths = paths

    def _resolve(self, path: str) -> Path:
        resolved = self._paths.root / path
        self._paths.ensure_within(resolved, self._paths.root)
        if resolved.suffix != ".ipynb":
            raise PathConfinementViolation(f"Notebook path must end in .ipynb: {path!r}")
        return resolved

    def _load(self, path: str, notebook_path: Path) -> Any:
        if not notebook_path.exists():
            return _empty_notebook()
        try:
            # A JSON array root fails version detection with AttributeError
            notebook = nbformat.reads(notebook_path.read_text(encoding="utf-8"), as_version=nbformat.NO_CONVERT)
        except (ValueError, AttributeError) as e:
            raise NotebookError(path, f"not a notebook ({e})") from e

        major = notebook.get("nbformat")
        if major != 4:
            raise NotebookError(path, f"nbformat {major} is not supported, expected 4")
        try:
            nbformat.validate(notebook)
        except nbformat.ValidationError as e:
            raise NotebookError(path, e.message) from e

        minor = notebook.get("nbformat_minor", 0)
        if minor < v4.nbformat_minor:
            notebook = v4.upgrade(notebook, from_version=4, from_minor=minor)
        return notebook

    def append_cell(
        self,
        path: str,
        *,
        cell_type: str,
        source: list[str],
        metadata: Mapping[str, Any],
    ) -> str:
        """Append a cell and return its generated cell ID.

        Creates the notebook (and its directory) if it does not exist.

        Raises:
            ValueError: If cell_type is not code, markdown or raw
            PathConfinementViolation: If path escapes the project or is not .ipynb
            NotebookError: If the existing notebook is not valid nbformat 4
            OSError: If the notebook cannot be read or written
        """
        factory = _CELL_FACTORIES.get(cell_type)
        if factory is None:
            raise ValueError(f"Unsupported cell type {cell_type!r} (expected one of {', '.join(_CELL_FACTORIES)})")
        notebook_path = self._resolve(path)
        notebook = self._load(path, notebook_path)

        cell_id = f"cell-{uuid.uuid4().hex[:12]}"
        notebook.cells.append(factory(source=_join_source(source), metadata=dict(metadata), id=cell_id))

        notebook_path.parent.mkdir(parents=True, exist_ok=True)
        atomic_write(notebook_path, nbformat.writes(notebook) + "\n")
        logger.debug("notebook_cell_appended", notebook=path, cell_id=cell_id, cell_type=cell_type)
        return cell_id

    def read_cells(self, path: str) -> list[dict[str, Any]]:
        """Cells in order, with source joined into a single string."""
        notebook_path = self._resolve(path)
        if not notebook_path.exists():
            return []
        cells: list[dict[str, Any]] = list(self._load(path, notebook_path).cells)
        return cells


def checkpoint_cells(cells: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Filter cells tagged as checkpoint records."""
    return [c for c in cells if CHECKPOINT_CELL_TAG in c.get("metadata", {}).get("tags", [])]
