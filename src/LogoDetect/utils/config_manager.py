from typing import TypeVar, Type, List, Dict, Union, Any, get_type_hints, get_origin, get_args
import json
import os
import appdirs

from ..utils.log_setup import logger

T = TypeVar('T')

LAST_USED_PREFIX = 'last_used_'


def _is_dataclass_type(value_type) -> bool:
    return hasattr(value_type, '__dataclass_fields__')


class ConfigManager:
    """
    Loads detection settings once per process.

    Bundled defaults live in LogoDetect/config/<name>_config.json. A file named
    last_used_<name>_config.json in the user config dir replaces them, and any
    section or key it leaves out keeps the dataclass default.
    """
    _instance = None
    _configs: Dict[str, Any] = {}

    def __new__(cls):
        if cls._instance is None:
            instance = super(ConfigManager, cls).__new__(cls)
            instance._bundle_config_dir = os.path.join(os.path.dirname(os.path.dirname(__file__)), 'config')
            if not os.path.isdir(instance._bundle_config_dir):
                raise FileNotFoundError(f"Bundled config directory not found at {instance._bundle_config_dir}")

            instance._user_config_dir = appdirs.user_config_dir(appname="LogoDetect", appauthor=False)
            os.makedirs(instance._user_config_dir, exist_ok=True)
            cls._instance = instance
        return cls._instance

    def config_path(self, config_name: str, use_last_used: bool = True) -> str:
        """The file get_config will read for config_name"""
        if use_last_used:
            user_path = os.path.join(self._user_config_dir, f"{LAST_USED_PREFIX}{config_name}_config.json")
            if os.path.exists(user_path):
                return user_path
        return os.path.join(self._bundle_config_dir, f"{config_name}_config.json")

    def _read_json(self, path: str) -> dict:
        if not os.path.exists(path):
            raise FileNotFoundError(f"Config file not found at {path}")
        try:
            with open(path, 'r') as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValueError(f"Error parsing config file {path}: {str(e)}")
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must hold a JSON object")
        return data

    def _to_dataclass(self, cls: Type[T], data: Dict[str, Any]) -> T:
        hints = get_type_hints(cls)
        values = {}
        for key, raw in data.items():
            if key not in hints:
                logger.debug(f"Ignoring unknown config key '{key}' for {cls.__name__}")
                continue
            values[key] = self._convert(hints[key], raw)
        return cls(**values)

    def _convert(self, value_type: Type, raw: Any) -> Any:
        """Coerce a JSON value into value_type: nested dataclasses, lists of them, Optionals, floats."""
        if raw is None:
            return None

        origin = get_origin(value_type)
        if origin is Union:
            # Optional[X] is Union[X, None]
            candidates = [arg for arg in get_args(value_type) if arg is not type(None)]
            return self._convert(candidates[0], raw) if len(candidates) == 1 else raw
        if origin in (list, List):
            (item_type,) = get_args(value_type) or (Any,)
            if isinstance(raw, list) and _is_dataclass_type(item_type):
                return [self._to_dataclass(item_type, item) for item in raw if isinstance(item, dict)]
            return raw
        if _is_dataclass_type(value_type):
            return self._to_dataclass(value_type, raw) if isinstance(raw, dict) else raw
        if value_type is float and isinstance(raw, int) and not isinstance(raw, bool):
            # JSON writes whole-number floats as ints
            return float(raw)
        return raw

    def get_config(self, config_name: str, config_class: Type[T],
                   use_last_used: bool = True) -> T:
        """
        Get configuration as a dataclass instance.

        The instance is cached and shared; callers that change it for a single
        run should work on a copy.
        """
        if config_name in self._configs:
            return self._configs[config_name]

        path = self.config_path(config_name, use_last_used)
        config = self._to_dataclass(config_class, self._read_json(path))
        logger.debug(f"Loaded {config_name} config from {path}")
        self._configs[config_name] = config
        return config
