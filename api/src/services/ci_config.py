"""
.gitlab-ci.yml parser used when a CI file is copied to a release branch.
"""

import yaml
from typing import List, Dict, Any, Optional

from api.src.models.pipeline import EnvironmentStage

# Top-level keys that configure the pipeline rather than define a job
RESERVED_KEYS = {
    "default",
    "include",
    "stages",
    "variables",
    "workflow",
    "image",
    "services",
    "cache",
    "before_script",
    "after_script",
}

class CIConfigError(Exception):
    """Raised when a CI configuration is invalid."""
    pass

def parse_ci_config(yaml_content: str) -> Dict[str, Any]:
    """Parse a .gitlab-ci.yml document from string."""
    try:
        config = yaml.safe_load(yaml_content)
    except yaml.YAMLError as e:
        raise CIConfigError(f"Invalid YAML: {e}")

    return validate_config(config)

def validate_config(config: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Validate CI configuration structure."""
    if not config:
        raise CIConfigError("Empty CI configuration")

    if not isinstance(config, dict):
        raise CIConfigError("CI configuration must be a mapping")

    stages = config.get("stages", [])
    if not isinstance(stages, list):
        raise CIConfigError("'stages' must be a list")

    jobs = {}
    for name, job in config.items():
        if name in RESERVED_KEYS or str(name).startswith("."):
            continue
        if not isinstance(job, dict):
            raise CIConfigError(f"Job '{name}' must be a mapping")
        jobs[name] = job

    if not jobs and "include" not in config:
        raise CIConfigError("CI configuration defines no jobs")

    return {"stages": stages, "jobs": jobs}

def environment_jobs(config: Dict[str, Any]) -> List[Dict[str, Any]]:
    """List the environment deploy jobs a parsed configuration defines."""
    found = []
    for name, job in config["jobs"].items():
        stage = EnvironmentStage.from_job_name(name)
        if stage is None:
            continue
        found.append({
            "name": name,
            "environment": stage.value,
            "manual": job.get("when") == "manual" or any(
                isinstance(rule, dict) and rule.get("when") == "manual"
                for rule in job.get("rules", []) or []
            ),
        })
    return found
