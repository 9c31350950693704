"""
Engine Settings

Typed view over the YAML configuration consumed by the store, the approval
engine, the applier and the REST server.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from changegate.utils.config_loader import ConfigLoader


DEFAULT_AUDIT_SECRET = "changegate-dev-secret-change-in-production"


@dataclass
class ServerSettings:
    """REST server binding"""
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass
class MetricsSettings:
    """Prometheus exporter"""
    enabled: bool = False
    port: int = 9090


@dataclass
class EffectorSettings:
    """Remote platform effector"""
    base_url: Optional[str] = None
    timeout: float = 30.0
    api_token: Optional[str] = None


@dataclass
class EngineSettings:
    """Top-level engine configuration"""
    database_path: str = "data/changegate.db"
    audit_secret: str = DEFAULT_AUDIT_SECRET
    pending_ttl_minutes: int = 7 * 24 * 60
    apply_max_attempts: int = 3
    apply_backoff_seconds: float = 1.0
    lease_ttl_seconds: int = 300
    vote_max_retries: int = 5
    sweep_interval_seconds: int = 60
    db_timeout_seconds: float = 10.0
    # {"HIGH": [{"name": ..., "required_roles": [...], "min_approvals": 1}, ...]}
    risk_policy: Dict[str, Any] = field(default_factory=dict)
    server: ServerSettings = field(default_factory=ServerSettings)
    metrics: MetricsSettings = field(default_factory=MetricsSettings)
    effector: EffectorSettings = field(default_factory=EffectorSettings)

    def __post_init__(self):
        if self.apply_max_attempts < 1:
            raise ValueError("apply_max_attempts must be at least 1")
        if self.vote_max_retries < 1:
            raise ValueError("vote_max_retries must be at least 1")
        if self.pending_ttl_minutes <= 0:
            raise ValueError("pending_ttl_minutes must be positive")

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'EngineSettings':
        """Build settings from a loaded config mapping, ignoring unknown keys"""
        data = dict(data or {})

        server = ServerSettings(**data.pop('server', None) or {})
        metrics = MetricsSettings(**data.pop('metrics', None) or {})
        effector = EffectorSettings(**data.pop('effector', None) or {})

        known = {
            name for name in cls.__dataclass_fields__
            if name not in ('server', 'metrics', 'effector')
        }
        kwargs = {key: value for key, value in data.items() if key in known}

        return cls(server=server, metrics=metrics, effector=effector, **kwargs)

    @classmethod
    def load(cls, config_path: Optional[str] = None) -> 'EngineSettings':
        """Load settings from YAML with CHANGEGATE_* environment overrides"""
        return cls.from_dict(ConfigLoader.load_with_env_override(config_path))
