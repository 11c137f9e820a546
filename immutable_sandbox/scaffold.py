"""
Sandbox scaffolding.

Lays out a new experiment root and copies the analyst's source data
into ``input/``. Container and version-control setup are left to
external tooling.
"""

import asyncio
import logging
import shutil
from pathlib import Path
from typing import List, Optional, Union

from .errors import DuplicateLocation, ScaffoldError
from .models import INPUT_DIR, MANIFEST_FILE, OUTPUT_DIR, PROVENANCE_DIR

logger = logging.getLogger(__name__)

# Any of these means the directory already holds an experiment
SCAFFOLD_MARKERS = (OUTPUT_DIR, ".devcontainer", MANIFEST_FILE, PROVENANCE_DIR)

REQUIREMENTS_TEMPLATE = "# Add your dependencies here\npandas\nnumpy\nipykernel\n"

README_TEMPLATE = """# {name}

Immutable sandbox experiment.

- `input/`: source data, copied in at creation. Do not modify; any change
  is detected when the experiment is verified.
- `output/`: write results here.
- `manifest.json`, `manifest.json.sig`, `manifest.tsr`: written when the
  experiment is finalized.
"""


def find_scaffold_markers(location: Union[str, Path]) -> List[str]:
    location = Path(location)
    return [m for m in SCAFFOLD_MARKERS if (location / m).exists()]


def check_clean_location(location: Union[str, Path]) -> None:
    """
    Raises:
        DuplicateLocation: the directory shows prior scaffolding
    """
    markers = find_scaffold_markers(location)
    if markers:
        raise DuplicateLocation(
            f"{location} looks like an existing experiment (has {', '.join(markers)}); select a clean folder",
            step="scaffold",
        )


def scaffold_experiment(location: Union[str, Path], name: str, input_source: Optional[Union[str, Path]] = None) -> None:
    """
    Create input/ and output/, copy the input source, write README.md
    and requirements.txt at the root (existing files are kept).

    Raises:
        ScaffoldError: the input source is missing or could not be copied
    """
    location = Path(location)
    input_dir = location / INPUT_DIR
    output_dir = location / OUTPUT_DIR
    created = [d for d in (input_dir, output_dir) if not d.exists()]
    try:
        input_dir.mkdir(parents=True, exist_ok=True)
        output_dir.mkdir(exist_ok=True)

        if input_source is not None:
            source = Path(input_source)
            if not source.is_dir():
                raise ScaffoldError(f"Input source {source} is not a directory", step="scaffold")
            shutil.copytree(source, input_dir, symlinks=True, dirs_exist_ok=True)

        readme = location / "README.md"
        if not readme.exists():
            readme.write_text(README_TEMPLATE.format(name=name), encoding="utf-8")
        requirements = location / "requirements.txt"
        if not requirements.exists():
            requirements.write_text(REQUIREMENTS_TEMPLATE, encoding="utf-8")
    except (OSError, ScaffoldError) as e:
        # leave no markers behind so the location can be retried
        for d in created:
            shutil.rmtree(d, ignore_errors=True)
        if isinstance(e, ScaffoldError):
            raise
        raise ScaffoldError(f"Scaffolding {location} failed: {e}", step="scaffold") from e
    logger.info("Scaffolded experiment at %s", location)


async def scaffold_experiment_async(location: Union[str, Path], name: str,
                                    input_source: Optional[Union[str, Path]] = None) -> None:
    await asyncio.to_thread(scaffold_experiment, location, name, input_source)
