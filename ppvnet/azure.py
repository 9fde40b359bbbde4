# ============================================================================
# AZURE FUNCTIONS - azd environments and infrastructure outputs
# ============================================================================

import json
import logging
import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional

from .utils import INFRA_OUTPUT_KEYS, run_command

log = logging.getLogger(__name__)

Runner = Callable[[list[str]], str]


def list_azd_environments(runner: Runner = run_command) -> List[dict]:
    """Returns `azd env list` entries; an empty list when azd reports none."""
    out = runner(["azd", "env", "list", "--output", "json"])
    if not out.strip():
        return []
    envs = json.loads(out)
    return envs if isinstance(envs, list) else []


def azd_down(env_name: str, runner: Runner = run_command) -> None:
    """Deprovisions every Azure resource of an azd environment."""
    log.info("Running azd down for environment '%s'", env_name)
    runner(["azd", "down", "--environment", env_name, "--force", "--purge"])


def remove_azd_state(project_dir: Path, env_name: str) -> List[Path]:
    """Deletes .azure/<env> and, if it is then empty, .azure itself."""
    removed = []
    azure_dir = Path(project_dir) / ".azure"
    env_dir = azure_dir / env_name
    if env_dir.is_dir():
        shutil.rmtree(env_dir)
        removed.append(env_dir)
        log.info("Removed azd environment directory %s", env_dir)
    else:
        log.warning("No .azure directory found for %s, skipping removal", env_name)
    if azure_dir.is_dir() and not any(azure_dir.iterdir()):
        azure_dir.rmdir()
        removed.append(azure_dir)
        log.info("Removed empty %s", azure_dir)
    return removed


def azd_env_values(env_name: Optional[str] = None, runner: Runner = run_command) -> Dict[str, str]:
    cmd = ["azd", "env", "get-values", "--output", "json"]
    if env_name:
        cmd += ["--environment", env_name]
    out = runner(cmd)
    values = json.loads(out) if out.strip() else {}
    return {str(k): str(v) for k, v in values.items()}


def infra_outputs(env_name: Optional[str] = None, runner: Runner = run_command) -> Dict[str, str]:
    """Maps azd deployment outputs onto .env keys, ignoring unknown and empty outputs."""
    values = azd_env_values(env_name, runner)
    mapped = {}
    for output, key in INFRA_OUTPUT_KEYS.items():
        value = values.get(output)
        if value and key not in mapped:
            mapped[key] = value
    return mapped
