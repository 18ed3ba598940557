import os
import re
from typing import Any, Dict, Optional

import yaml

from sqlbulk.utils.logging import logger

# Pattern to match ${VAR} or ${env:VAR}
# Captures the variable name in group 1
ENV_PATTERN = re.compile(r"\$\{(?:env:)?([A-Za-z0-9_]+)\}")


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    """Merge override dictionary into base dictionary.

    Dicts are merged recursively; every other value is replaced by the override.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            if key in result:
                logger.debug("Overwriting key during merge", key=key)
            result[key] = value
    return result


def _substitute_env(content: str, path: str) -> str:
    def replace_env(match):
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            logger.error("Missing required environment variable", variable=var_name, file=path)
            raise ValueError(f"Missing environment variable: {var_name}")
        if any(c in value for c in ["\n", "\r", ":", "#"]):
            logger.warning(
                "Environment variable contains YAML-sensitive characters",
                variable=var_name,
            )
        # Values pulled from the environment are usually credentials
        logger.register_secret(value)
        return value

    return ENV_PATTERN.sub(replace_env, content)


def load_yaml_with_env(path: str, env: Optional[str] = None) -> Dict[str, Any]:
    """Load YAML file with environment variable substitution and imports.

    Supports:
    - ${VAR_NAME} substitution
    - 'imports' list of relative paths
    - 'environments' overrides based on env param

    Args:
        path: Path to YAML file
        env: Environment name (e.g., 'prod', 'dev') to apply overrides

    Returns:
        Parsed dictionary (merged with imports and env overrides)

    Raises:
        FileNotFoundError: If file does not exist
        ValueError: If environment variable is missing
        yaml.YAMLError: If YAML parsing fails
    """
    logger.debug("Loading YAML configuration", path=path, env=env)

    if not os.path.exists(path):
        logger.error("Configuration file not found", path=path)
        raise FileNotFoundError(f"YAML file not found: {path}")

    abs_path = os.path.abspath(path)
    base_dir = os.path.dirname(abs_path)

    with open(abs_path, "r", encoding="utf-8") as f:
        content = f.read()

    try:
        data = yaml.safe_load(_substitute_env(content, abs_path)) or {}
    except yaml.YAMLError as e:
        logger.error("YAML parsing failed", path=abs_path, error=str(e))
        raise

    imports = data.pop("imports", [])
    if isinstance(imports, str):
        imports = [imports]

    for import_path in imports:
        if not os.path.isabs(import_path):
            full_import_path = os.path.join(base_dir, import_path)
        else:
            full_import_path = import_path

        if not os.path.exists(full_import_path):
            logger.error(
                "Imported configuration file not found",
                import_path=import_path,
                parent_file=abs_path,
            )
            raise FileNotFoundError(f"Imported YAML file not found: {full_import_path}")

        # The importing file wins over what it imports
        imported_data = load_yaml_with_env(full_import_path, env=env)
        data = _deep_merge(imported_data, data)

    environments = data.pop("environments", {}) or {}
    if env:
        if env in environments:
            logger.debug(
                "Applying environment overrides",
                env=env,
                override_keys=list(environments[env].keys()),
            )
            data = _deep_merge(data, environments[env])
        else:
            logger.debug(
                "No environment override found",
                env=env,
                available_environments=list(environments.keys()),
            )

    logger.debug("Configuration loading complete", path=path, final_keys=list(data.keys()))
    return data
