"""Rehydration code generation.

Turns a checkpoint manifest into Python source that, executed in a fresh
interpreter, reloads the checkpoint's artifacts into variables and restores
random seeds. The last line prints the REHYDRATED marker so the orchestrator
can confirm the code actually ran.

Generated code for a manifest with a parquet artifact and seeds:

    import pandas as pd
    import random
    import numpy as np

    customers = pd.read_parquet("reports/churn/run-001/S01_load_data/customers.parquet")

    # Restore random seeds for reproducibility
    random.seed(42)
    np.random.seed(123)

    print("[REHYDRATED:from=ckpt-001]")
"""

import json
import keyword
import re
from collections.abc import Callable
from pathlib import PurePosixPath

from waypoint.contracts.checkpoint import CheckpointManifest
from waypoint.core.markers import rehydrated_marker


def _literal(path: str) -> str:
    # JSON string escaping is valid Python string literal syntax
    return json.dumps(path)


def _load_parquet(var: str, path: str) -> list[str]:
    return [f"{var} = pd.read_parquet({_literal(path)})"]


def _load_csv(var: str, path: str) -> list[str]:
    return [f"{var} = pd.read_csv({_literal(path)})"]


def _load_pickle(var: str, path: str) -> list[str]:
    return [f"with open({_literal(path)}, \"rb\") as f:", f"    {var} = pickle.load(f)"]


def _load_joblib(var: str, path: str) -> list[str]:
    return [f"{var} = joblib.load({_literal(path)})"]


def _load_json(var: str, path: str) -> list[str]:
    return [f"with open({_literal(path)}, \"r\") as f:", f"    {var} = json.load(f)"]


# extension -> (import line, loader). Dict order is the import order.
_LOADERS: dict[str, tuple[str, Callable[[str, str], list[str]]]] = {
    ".parquet": ("import pandas as pd", _load_parquet),
    ".csv": ("import pandas as pd", _load_csv),
    ".pkl": ("import pickle", _load_pickle),
    ".pickle": ("import pickle", _load_pickle),
    ".joblib": ("import joblib", _load_joblib),
    ".json": ("import json", _load_json),
}

# generator name -> (import line, seeding statement template)
_SEEDERS: dict[str, tuple[str, str]] = {
    "random": ("import random", "random.seed({seed})"),
    "numpy": ("import numpy as np", "np.random.seed({seed})"),
    "torch": ("import torch", "torch.manual_seed({seed})"),
}

_IDENTIFIER_UNSAFE = re.compile(r"[^0-9a-zA-Z_]")

# Names the generated code itself binds or calls
_RESERVED_NAMES = frozenset({"f", "pd", "np", "pickle", "joblib", "json", "random", "torch", "print", "open"})


def variable_name(relative_path: str, taken: set[str]) -> str:
    """Derive a unique, valid Python identifier from an artifact's base name.

    "S01_load/clean-data.parquet" -> "clean_data". Names that would not
    parse are prefixed or suffixed with an underscore. Names already in
    taken get _2, _3.
    """
    stem = PurePosixPath(relative_path.replace("\\", "/")).name.split(".")[0]
    name = _IDENTIFIER_UNSAFE.sub("_", stem) or "artifact"
    if name[0].isdigit():
        name = f"_{name}"
    if keyword.iskeyword(name):
        name = f"{name}_"
    candidate = name
    suffix = 2
    while candidate in taken:
        candidate = f"{name}_{suffix}"
        suffix += 1
    taken.add(candidate)
    return candidate


def generate_rehydration_code(manifest: CheckpointManifest) -> list[str]:
    """Generate the rehydration cell source for a checkpoint.

    Returns one string per line. Pure: nothing is read or executed.
    """
    imports: list[str] = []
    loads: list[str] = []
    taken: set[str] = set(_RESERVED_NAMES)

    for artifact in manifest.artifacts:
        suffix = PurePosixPath(artifact.relative_path).suffix.lower()
        loader = _LOADERS.get(suffix)
        if loader is None:
            kind = repr(suffix) if suffix else "files without extension"
            # repr keeps a newline in the path from ending the comment
            loads.append(f"# {artifact.relative_path!r}: no loader for {kind}, load manually")
            continue
        import_line, load = loader
        if import_line not in imports:
            imports.append(import_line)
        loads.extend(load(variable_name(artifact.relative_path, taken), artifact.relative_path))

    seeds: list[str] = []
    random_seeds = manifest.python_env.random_seeds or {}
    for generator, (import_line, template) in _SEEDERS.items():
        if generator not in random_seeds:
            continue
        if import_line not in imports:
            imports.append(import_line)
        seeds.append(template.format(seed=int(random_seeds[generator])))
    for generator in sorted(set(random_seeds) - set(_SEEDERS)):
        seeds.append(f"# Unknown random generator {generator!r} (seed {random_seeds[generator]}), not restored")

    lines = list(imports)
    if loads:
        if lines:
            lines.append("")
        lines.extend(loads)
    if seeds:
        if lines:
            lines.append("")
        lines.append("# Restore random seeds for reproducibility")
        lines.extend(seeds)
    if lines:
        lines.append("")
    lines.append(f"print({_literal(rehydrated_marker(manifest.checkpoint_id))})")
    return lines
