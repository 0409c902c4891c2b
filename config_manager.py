import os
import re
from configparser import ConfigParser, NoOptionError, NoSectionError
from typing import Dict, Any, Optional, List


APP_DIR = os.path.dirname(os.path.abspath(__file__))

_TRUE = ('true', 'yes', 'on')
_FALSE = ('false', 'no', 'off')
_FLOAT = re.compile(r'-?\d+\.\d*')
_DICT_PAIR = re.compile(r'(\w+)\s*:\s*(\[.*?]|[^,]+)(?=\s*(?:,|$))')
_LIST_ITEM = re.compile(r'<[^>]+>|[^,\s]+')


class ConfigManager:
    """
    Reads config.ini/models.ini (plus the optional user and custom files) once
    and hands out SessionConfig objects layered on top of them.
    """

    def __init__(self, config_file: Optional[str] = None):
        self.base_config = self._read_layered('config.ini', 'user_config', defaults=None)
        if config_file is not None:
            custom = self.resolve_file_path(config_file)
            if custom is None:
                raise FileNotFoundError(f'Could not find the custom config file at {config_file}')
            self.base_config.read(custom)
        self.models = self._read_layered('models.ini', 'user_models', defaults=self.base_config)

    @classmethod
    def _read_layered(cls, shipped: str, user_key: str, defaults: Optional[ConfigParser]) -> ConfigParser:
        """
        Read a shipped INI file, then the per-user file named by [DEFAULT].<user_key>
        :param shipped: file name next to this module
        :param user_key: DEFAULT option pointing at the user override
        :param defaults: parser whose DEFAULT section holds user_key (the file itself when None)
        """
        path = os.path.join(APP_DIR, shipped)
        if not os.path.exists(path):
            raise FileNotFoundError(f'Could not find {shipped} at {path}')
        parser = ConfigParser()
        parser.read(path)

        source = parser if defaults is None else defaults
        user_file = source['DEFAULT'].get(user_key)
        if user_file:
            resolved = cls.resolve_file_path(user_file)
            if resolved is not None:
                parser.read(resolved)
        return parser

    def create_session_config(self, overrides: Optional[Dict[str, Any]] = None) -> 'SessionConfig':
        """Create a mutable session-specific config; a known model override is normalized"""
        session_config = SessionConfig(self.base_config, self.models)
        overrides = dict(overrides or {})
        if overrides.get('model'):
            overrides['model'] = session_config.normalize_model_name(overrides['model']) or overrides['model']
        session_config.overrides.update(overrides)
        return session_config

    @staticmethod
    def fix_values(value: Any) -> Any:
        """Convert an INI string into the int/float/bool/list/dict/path it spells"""
        if not isinstance(value, str):
            return value
        text = value.strip()

        if text.startswith('~'):
            text = os.path.expanduser(text)
        if text[:1] == '{' and text[-1:] == '}':
            return {k.strip(): ConfigManager.fix_values(v.strip()) for k, v in _DICT_PAIR.findall(text[1:-1])}
        if text[:1] == '[' and text[-1:] == ']':
            return [ConfigManager.fix_values(item) for item in _LIST_ITEM.findall(text[1:-1])]
        if text.isdigit():
            return int(text)
        if _FLOAT.fullmatch(text):
            return float(text)
        if text.lower() in _TRUE:
            return True
        if text.lower() in _FALSE:
            return False
        if len(text) >= 2 and text[0] == text[-1] and text[0] in ('"', "'"):
            return text[1:-1]
        return text

    @staticmethod
    def resolve_file_path(file_name: Optional[str], base_dir: Optional[str] = None) -> Optional[str]:
        """
        Absolute path of an existing file, or None
        :param file_name: absolute, ~-prefixed or relative file name
        :param base_dir: directory relative names are taken from (cwd by default; relative
                         base dirs are taken from the application directory)
        """
        if file_name is None:
            return None
        if base_dir is None:
            base = os.getcwd()
        else:
            base = os.path.expanduser(base_dir)
            if not os.path.isabs(base):
                base = os.path.join(APP_DIR, base)
        if not os.path.isdir(base):
            return None
        candidate = os.path.join(base, os.path.expanduser(file_name))
        return os.path.abspath(candidate) if os.path.isfile(candidate) else None


def _section_dict(parser: ConfigParser, section: str) -> Dict[str, Any]:
    return {option: ConfigManager.fix_values(parser.get(section, option)) for option in parser.options(section)}


class SessionConfig:
    """
    Per-session view of the configuration: runtime overrides win over the
    model section, which wins over the provider section and [DEFAULT].
    """

    def __init__(self, base_config: ConfigParser, models: ConfigParser, overrides: Optional[Dict[str, Any]] = None):
        self.base_config = base_config
        self.models = models
        self.overrides = overrides or {}
        self._params_cache: Dict[str, Dict[str, Any]] = {}

    def get_params(self, model: Optional[str] = None) -> Dict[str, Any]:
        """Merged parameters for a model (the session's model by default)"""
        model = model or self.overrides.get('model') or self.default_model() or ''
        if model not in self._params_cache:
            params = {k: ConfigManager.fix_values(v) for k, v in self.base_config.defaults().items()}
            if model:
                params['model'] = self.normalize_model_name(model) or model
                provider = self.get_provider_for_model(model)
                if provider:
                    params['provider'] = provider
                    params.update(self.get_provider_config(provider))
                    params.update(self._get_model_config(model))
            params.update(self.overrides)
            self._params_cache[model] = params
        return dict(self._params_cache[model])

    def set_option(self, key: str, value: Any) -> None:
        """Set a runtime override"""
        self.overrides[key] = value
        self._params_cache.clear()

    def get_option(self, section: str, option: str, fallback: Any = None) -> Any:
        """
        Read one setting; a runtime override of the same name takes precedence
        :param section: INI section
        :param option: option name
        :param fallback: returned when neither the override nor the option exists
        """
        if option in self.overrides:
            return self.overrides[option]
        try:
            return ConfigManager.fix_values(self.base_config.get(section, option))
        except (NoSectionError, NoOptionError):
            return self.get_params().get(option, fallback) if section == 'DEFAULT' else fallback

    def default_model(self) -> Optional[str]:
        return self.base_config.get('DEFAULT', 'default_model', fallback=None)

    def _model_section(self, model: str) -> Optional[str]:
        if self.models.has_section(model):
            return model
        return next(
            (s for s in self.models.sections() if self.models.get(s, 'model_name', fallback=None) == model),
            None,
        )

    def _get_model_config(self, model: str) -> Dict[str, Any]:
        section = self._model_section(model)
        return _section_dict(self.models, section) if section else {}

    def get_provider_for_model(self, model: str) -> Optional[str]:
        section = self._model_section(model)
        return self.models.get(section, 'provider', fallback=None) if section else None

    def get_provider_config(self, provider: str) -> Dict[str, Any]:
        if not self.base_config.has_section(provider):
            return {}
        return _section_dict(self.base_config, provider)

    def valid_model(self, model: str) -> bool:
        return self._model_section(model) is not None

    def normalize_model_name(self, model: str) -> Optional[str]:
        """models.ini section name for a section or API model name"""
        return self._model_section(model)

    def _provider_active(self, provider: Optional[str]) -> bool:
        return bool(provider) and self.base_config.getboolean(provider, 'active', fallback=False)

    def list_models(self, showall: bool = False, provider: Optional[str] = None) -> Dict[str, Dict[str, Any]]:
        """Models of active providers (all of them with showall); the default one is marked"""
        default_model = self.default_model()
        out: Dict[str, Dict[str, Any]] = {}
        for model in self.models.sections():
            owner = self.models.get(model, 'provider', fallback=None)
            if provider is not None and owner != provider:
                continue
            if not showall:
                if not self._provider_active(owner):
                    continue
                allowed = self.base_config.get(owner, 'models', fallback=None)
                if allowed is not None and model not in [m.strip() for m in allowed.split(',')]:
                    continue
            data = _section_dict(self.models, model)
            if model == default_model:
                data['default'] = True
            out[model] = data
        return out

    def list_providers(self, showall: bool = False) -> List[str]:
        # Only sections that some model names as its provider count
        owners = {self.models.get(m, 'provider', fallback=None) for m in self.models.sections()}
        return [p for p in self.base_config.sections() if p in owners and (showall or self._provider_active(p))]
