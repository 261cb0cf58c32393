"""Unified configuration loading utility shared by every component."""

import json
import logging
import os
import re
from pathlib import Path
from typing import Dict, Any, Optional, List

from utils.error_handling import ConfigurationError


class ConfigLoader:
    """Centralized configuration loader with caching and validation."""

    REQUIRED_SECTIONS: Dict[str, type] = {
        "agent": dict,
        "strategy": dict,
        "healing": dict,
        "pattern_memory": dict,
        "llm": dict,
        "browser": dict,
    }

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._config_cache: Dict[str, Dict[str, Any]] = {}
        self._missing_env_vars: set[str] = set()

    def load_config(self, config_path: str) -> Dict[str, Any]:
        """Load and cache JSON configuration with unified error handling.

        Args:
            config_path: Path to configuration file

        Returns:
            Configuration dictionary

        Raises:
            ConfigurationError: If file not found or JSON invalid
        """
        if config_path in self._config_cache:
            return self._config_cache[config_path]

        config_file = Path(config_path)
        if not config_file.exists():
            error_msg = f"Configuration file not found: {config_path}"
            self.logger.error(error_msg)
            raise ConfigurationError(error_msg, {"path": config_path})

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                config = json.load(f)
        except json.JSONDecodeError as e:
            error_msg = f"Invalid JSON in configuration {config_path}: {e}"
            self.logger.error(error_msg)
            raise ConfigurationError(error_msg, {"path": config_path}) from e
        except IOError as e:
            error_msg = f"Error reading configuration {config_path}: {e}"
            self.logger.error(error_msg)
            raise ConfigurationError(error_msg, {"path": config_path}) from e

        config = self._substitute_env_variables(config)

        for message in self.validate_config_structure(config):
            self.logger.warning("Configuration validation warning: %s", message)

        for key_path, present in self.validate_api_keys(config).items():
            if not present:
                self.logger.warning("Configuration missing API key for %s", key_path)

        self._config_cache[config_path] = config
        self.logger.debug(f"Configuration loaded successfully: {config_path}")
        return config

    def get_nested_value(self, config: Dict[str, Any], key_path: str,
                         default: Any = None) -> Any:
        """Get nested configuration value using dot notation.

        Example:
            >>> config = {'llm': {'timeout_seconds': 45}}
            >>> loader.get_nested_value(config, 'llm.timeout_seconds')
            45
        """
        value = config
        for key in key_path.split('.'):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def clear_cache(self, config_path: Optional[str] = None) -> None:
        """Clear configuration cache for one file or for all of them."""
        if config_path:
            self._config_cache.pop(config_path, None)
        else:
            self._config_cache.clear()
            self._missing_env_vars.clear()
        self.logger.debug(f"Configuration cache cleared: {config_path or 'all'}")

    ENV_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")

    def _substitute_env_variables(self, value: Any) -> Any:
        if isinstance(value, dict):
            return {k: self._substitute_env_variables(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self._substitute_env_variables(item) for item in value]
        if isinstance(value, str):
            def replace(match: re.Match[str]) -> str:
                env_name = match.group(1)
                env_value = os.getenv(env_name)
                if env_value is None:
                    if env_name not in self._missing_env_vars:
                        self.logger.warning(
                            "Environment variable %s is not set; substituting empty string",
                            env_name,
                        )
                        self._missing_env_vars.add(env_name)
                    return ""
                return env_value

            return self.ENV_PATTERN.sub(replace, value)
        return value

    def validate_config_structure(self, config: Dict[str, Any]) -> List[str]:
        errors: List[str] = []

        for key, expected_type in self.REQUIRED_SECTIONS.items():
            value = config.get(key)
            if value is None:
                errors.append(f"Missing configuration section '{key}', defaults apply")
            elif not isinstance(value, expected_type):
                errors.append(f"Section '{key}' must be an object in configuration")

        return errors

    def validate_api_keys(self, config: Dict[str, Any]) -> Dict[str, bool]:
        status: Dict[str, bool] = {}

        llm = config.get("llm", {})
        if isinstance(llm, dict):
            for provider in {llm.get("provider"), llm.get("fallback_provider")}:
                if not provider:
                    continue
                section = llm.get(provider, {})
                if isinstance(section, dict):
                    status[f"llm.{provider}.api_key"] = bool(section.get("api_key"))

        firecrawl = config.get("firecrawl", {})
        if isinstance(firecrawl, dict) and firecrawl.get("enabled"):
            status["firecrawl.api_key"] = bool(firecrawl.get("api_key"))

        return status


# Global instance for application-wide use
config_loader = ConfigLoader()


def load_config(config_path: str = "config/settings.json") -> Dict[str, Any]:
    """Load configuration using the global config loader instance."""
    return config_loader.load_config(config_path)

