"""
Backup policy loading and validation.

A policy file is JSON describing one or more models (backup jobs). Each model
declares its sources, pre-run hooks, pipeline settings and storage backends.
A top-level "defaults" block is merged under every model: dict settings are
merged key by key, list settings (hooks, backends, require_env) are
concatenated with the defaults first.

String values may reference environment variables as ${NAME} or
${NAME:-fallback}. A referenced variable that is not set is a ConfigError.
"""

import os
import re
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Union

from dotenv import load_dotenv

from .errors import ConfigError

logger = logging.getLogger(__name__)

COMPRESSION_FORMATS = ('gzip', 'bzip2', 'xz', 'none')
BACKEND_TYPES = ('local', 's3')
SOURCE_TYPES = ('path', 'glob', 'command')

DEFAULT_COMPRESSION_FORMAT = 'gzip'
DEFAULT_COMPRESSION_LEVEL = 6
DEFAULT_CHUNK_SIZE_MB = 10

# S3 rejects multipart parts under 5 MiB except for the last one
S3_MIN_CHUNK_SIZE_MB = 5

MB = 1024 * 1024

_ENV_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}')
_LIST_KEYS = ('hooks', 'backends', 'require_env')


@dataclass(frozen=True)
class PipelineDescriptor:
    """Pipeline settings for one run. Immutable once the run starts."""
    compression_format: str = DEFAULT_COMPRESSION_FORMAT
    compression_level: int = DEFAULT_COMPRESSION_LEVEL
    encryption_recipients: FrozenSet[str] = frozenset()
    chunk_size_bytes: int = DEFAULT_CHUNK_SIZE_MB * MB

    @property
    def is_encrypted(self) -> bool:
        return bool(self.encryption_recipients)


@dataclass
class HookSpec:
    """A command executed before enumeration."""
    name: str
    command: Union[str, List[str]]
    mandatory: bool = True
    timeout: Optional[float] = None


@dataclass
class SourceSpec:
    """A source declaration; the handler is built by sources.create_source()."""
    type: str
    config: Dict[str, Any]


@dataclass
class LocalBackendConfig:
    name: str
    path: str
    keep: Optional[int] = None
    chunk_size_bytes: Optional[int] = None
    type: str = 'local'


@dataclass
class S3BackendConfig:
    name: str
    bucket: str
    region: str = 'us-east-1'
    prefix: str = 'backup'
    access_key_id: Optional[str] = None
    secret_access_key: Optional[str] = None
    endpoint_url: Optional[str] = None
    keep: Optional[int] = None
    chunk_size_bytes: Optional[int] = None
    type: str = 's3'


@dataclass
class ModelPolicy:
    """Everything needed to run one model end to end."""
    name: str
    description: str = ''
    sources: List[SourceSpec] = field(default_factory=list)
    hooks: List[HookSpec] = field(default_factory=list)
    pipeline: PipelineDescriptor = field(default_factory=PipelineDescriptor)
    backends: List[Union[LocalBackendConfig, S3BackendConfig]] = field(default_factory=list)
    encryption_keys: Dict[str, str] = field(default_factory=dict)
    key_dir: Optional[str] = None
    schedule: Optional[str] = None
    require_all_backends: bool = True

    @property
    def primary_backend(self):
        """The first configured backend."""
        return self.backends[0] if self.backends else None

    def chunk_size_for(self, backend) -> int:
        return backend.chunk_size_bytes or self.pipeline.chunk_size_bytes


@dataclass
class Policy:
    models: Dict[str, ModelPolicy]
    source_path: Optional[str] = None

    def get(self, name: str) -> ModelPolicy:
        if name not in self.models:
            raise ConfigError(
                f"Unknown model: {name}. Available: {sorted(self.models)}"
            )
        return self.models[name]

    def __iter__(self):
        return iter(self.models.values())


def load_policy(path: str, env_file: Optional[str] = None,
                environ: Optional[Mapping[str, str]] = None) -> Policy:
    """
    Load and validate a policy file.

    A .env file next to the policy (or env_file, when given) is loaded into
    the process environment first without overriding existing variables.

    Args:
        path: Path to the JSON policy file
        env_file: Optional explicit .env path
        environ: Environment mapping for interpolation (default: os.environ)

    Returns:
        Validated Policy

    Raises:
        ConfigError: If the file is missing, malformed or invalid
    """
    policy_path = Path(path).expanduser()
    if not policy_path.is_file():
        raise ConfigError(f"Policy file not found: {path}")

    dotenv_path = Path(env_file) if env_file else policy_path.parent / '.env'
    if dotenv_path.is_file():
        load_dotenv(dotenv_path, override=False)
        logger.debug(f"Loaded environment from {dotenv_path}")

    try:
        with open(policy_path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Policy file is not valid JSON ({path}): {e}")

    policy = parse_policy(data, environ if environ is not None else os.environ)
    policy.source_path = str(policy_path)
    return policy


def parse_policy(data: Dict[str, Any], environ: Mapping[str, str]) -> Policy:
    """
    Build a Policy from already-decoded policy data.

    Raises:
        ConfigError: If any model is invalid
    """
    if not isinstance(data, dict):
        raise ConfigError("Policy must be a JSON object")

    models_data = data.get('models')
    if not isinstance(models_data, dict) or not models_data:
        raise ConfigError("Policy must define at least one model under 'models'")

    defaults = data.get('defaults') or {}
    if not isinstance(defaults, dict):
        raise ConfigError("'defaults' must be an object")

    models = {}
    for name, model_data in models_data.items():
        if not isinstance(model_data, dict):
            raise ConfigError(f"Model {name}: definition must be an object")
        merged = _merge_defaults(defaults, model_data)
        models[name] = _parse_model(name, merged, environ)

    return Policy(models=models)


def _merge_defaults(defaults: Dict[str, Any], model: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(defaults)
    for key, value in model.items():
        base = merged.get(key)
        if key in _LIST_KEYS and isinstance(base, list) and isinstance(value, list):
            merged[key] = base + value
        elif isinstance(base, dict) and isinstance(value, dict):
            merged[key] = {**base, **value}
        else:
            merged[key] = value
    return merged


def interpolate(value: Any, environ: Mapping[str, str], where: str = 'policy') -> Any:
    """Recursively substitute ${NAME} references in strings."""
    if isinstance(value, str):
        def replace(match):
            name, fallback = match.group(1), match.group(2)
            if name in environ and environ[name] != '':
                return environ[name]
            if fallback is not None:
                return fallback
            raise ConfigError(f"{where}: environment variable ${name} must be set")
        return _ENV_PATTERN.sub(replace, value)
    if isinstance(value, list):
        return [interpolate(item, environ, where) for item in value]
    if isinstance(value, dict):
        return {key: interpolate(item, environ, where) for key, item in value.items()}
    return value


def _parse_model(name: str, data: Dict[str, Any], environ: Mapping[str, str]) -> ModelPolicy:
    where = f"Model {name}"

    for var in data.get('require_env', []):
        if not environ.get(var):
            raise ConfigError(f"{where}: ${var} must be set")

    data = interpolate(data, environ, where)

    pipeline = _parse_pipeline(where, data)

    sources = []
    for index, source in enumerate(data.get('sources', [])):
        sources.append(_parse_source(f"{where} source #{index}", source))
    if not sources:
        raise ConfigError(f"{where}: at least one source is required")

    hooks = []
    for index, hook in enumerate(data.get('hooks', [])):
        hooks.append(_parse_hook(f"{where} hook #{index}", hook))

    backends = []
    seen_names = set()
    for index, backend in enumerate(data.get('backends', [])):
        parsed = _parse_backend(f"{where} backend #{index}", backend, environ)
        if parsed is None:
            continue
        if parsed.name in seen_names:
            raise ConfigError(f"{where}: duplicate backend name '{parsed.name}'")
        seen_names.add(parsed.name)
        backends.append(parsed)
    if not backends:
        raise ConfigError(f"{where}: at least one backend is required")

    for backend in backends:
        chunk_size = backend.chunk_size_bytes or pipeline.chunk_size_bytes
        if backend.type == 's3' and chunk_size < S3_MIN_CHUNK_SIZE_MB * MB:
            raise ConfigError(
                f"{where}: backend '{backend.name}' needs chunk_size_mb of at least {S3_MIN_CHUNK_SIZE_MB}"
            )

    encryption = data.get('encryption') or {}
    keys = encryption.get('keys') or {}
    if not isinstance(keys, dict):
        raise ConfigError(f"{where}: encryption.keys must be an object")

    return ModelPolicy(
        name=name,
        description=data.get('description', ''),
        sources=sources,
        hooks=hooks,
        pipeline=pipeline,
        backends=backends,
        encryption_keys=dict(keys),
        key_dir=encryption.get('key_dir'),
        schedule=data.get('schedule'),
        require_all_backends=bool(data.get('require_all_backends', True)),
    )


def _parse_pipeline(where: str, data: Dict[str, Any]) -> PipelineDescriptor:
    compression = data.get('compression') or {}
    compression_format = compression.get('format', DEFAULT_COMPRESSION_FORMAT)
    if compression_format not in COMPRESSION_FORMATS:
        raise ConfigError(
            f"{where}: invalid compression format: {compression_format}. "
            f"Valid options: {list(COMPRESSION_FORMATS)}"
        )

    level = compression.get('level', DEFAULT_COMPRESSION_LEVEL)
    if isinstance(level, bool) or not isinstance(level, int) or not 1 <= level <= 9:
        raise ConfigError(f"{where}: compression level must be an integer 1-9, got {level!r}")

    encryption = data.get('encryption') or {}
    recipients = encryption.get('recipients') or []
    if isinstance(recipients, str):
        recipients = [recipients]

    chunk_size_mb = data.get('chunk_size_mb', DEFAULT_CHUNK_SIZE_MB)
    chunk_size_bytes = _chunk_size(where, chunk_size_mb)

    return PipelineDescriptor(
        compression_format=compression_format,
        compression_level=level,
        encryption_recipients=frozenset(recipients),
        chunk_size_bytes=chunk_size_bytes,
    )


def _chunk_size(where: str, chunk_size_mb: Any) -> int:
    if isinstance(chunk_size_mb, bool) or not isinstance(chunk_size_mb, (int, float)) or chunk_size_mb <= 0:
        raise ConfigError(f"{where}: chunk_size_mb must be a positive number, got {chunk_size_mb!r}")
    return int(chunk_size_mb * MB)


def _parse_keep(where: str, keep: Any) -> Optional[int]:
    if keep is None:
        return None
    if isinstance(keep, bool) or not isinstance(keep, int) or keep < 1:
        raise ConfigError(f"{where}: keep must be a positive integer, got {keep!r}")
    return keep


def _require(where: str, data: Dict[str, Any], key: str) -> Any:
    value = data.get(key)
    if value in (None, ''):
        raise ConfigError(f"{where}: missing required field '{key}'")
    return value


def _parse_source(where: str, data: Dict[str, Any]) -> SourceSpec:
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: must be an object")
    source_type = data.get('type', 'path')
    if source_type not in SOURCE_TYPES:
        raise ConfigError(f"{where}: invalid source type: {source_type}")

    required = {'path': 'path', 'glob': 'pattern', 'command': 'command'}[source_type]
    _require(where, data, required)
    if source_type == 'command':
        _require(where, data, 'name')

    config = {key: value for key, value in data.items() if key != 'type'}
    return SourceSpec(type=source_type, config=config)


def _parse_hook(where: str, data: Dict[str, Any]) -> HookSpec:
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: must be an object")
    command = _require(where, data, 'command')
    if not isinstance(command, (str, list)):
        raise ConfigError(f"{where}: command must be a string or a list")
    return HookSpec(
        name=data.get('name') or (command if isinstance(command, str) else ' '.join(command)),
        command=command,
        mandatory=bool(data.get('mandatory', True)),
        timeout=data.get('timeout'),
    )


def _parse_backend(where: str, data: Dict[str, Any], environ: Mapping[str, str]):
    if not isinstance(data, dict):
        raise ConfigError(f"{where}: must be an object")

    skip_var = data.get('skip_if_env')
    if skip_var and environ.get(skip_var):
        logger.info(f"{where}: skipped because ${skip_var} is set")
        return None

    backend_type = data.get('type')
    if backend_type not in BACKEND_TYPES:
        raise ConfigError(
            f"{where}: invalid backend type: {backend_type}. Valid options: {list(BACKEND_TYPES)}"
        )

    name = data.get('name') or backend_type
    keep = _parse_keep(where, data.get('keep'))
    chunk_size_bytes = None
    if 'chunk_size_mb' in data:
        chunk_size_bytes = _chunk_size(where, data['chunk_size_mb'])

    if backend_type == 'local':
        return LocalBackendConfig(
            name=name,
            path=_require(where, data, 'path'),
            keep=keep,
            chunk_size_bytes=chunk_size_bytes,
        )

    return S3BackendConfig(
        name=name,
        bucket=_require(where, data, 'bucket'),
        region=data.get('region') or 'us-east-1',
        prefix=(data.get('prefix') or 'backup').strip('/'),
        access_key_id=data.get('access_key_id'),
        secret_access_key=data.get('secret_access_key'),
        endpoint_url=data.get('endpoint_url'),
        keep=keep,
        chunk_size_bytes=chunk_size_bytes,
    )
