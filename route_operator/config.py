"""
Operator configuration, read from the environment
"""

import os
from dataclasses import dataclass


@dataclass(frozen=True)
class OperatorConfig:
    watch_namespace: str = ''
    workloads_tls_secret: str = ''
    max_concurrent_reconciles: int = 4
    resync_interval_seconds: float = 300
    domain_requeue_seconds: float = 5
    backoff_base_seconds: float = 0.005
    backoff_max_seconds: float = 1000
    watch_timeout_seconds: int = 300
    log_level: str = 'INFO'

    @classmethod
    def from_env(cls, environ=None) -> 'OperatorConfig':
        env = os.environ if environ is None else environ

        tls_secret = env.get('WORKLOADS_TLS_SECRET', '').strip()
        if tls_secret.count('/') > 1:
            raise ValueError(f"WORKLOADS_TLS_SECRET must be 'name' or 'namespace/name', got {tls_secret!r}")

        config = cls(
            watch_namespace=env.get('WATCH_NAMESPACE', '').strip(),
            workloads_tls_secret=tls_secret,
            max_concurrent_reconciles=int(env.get('MAX_CONCURRENT_RECONCILES', '4')),
            resync_interval_seconds=float(env.get('RESYNC_INTERVAL_SECONDS', '300')),
            domain_requeue_seconds=float(env.get('DOMAIN_REQUEUE_SECONDS', '5')),
            backoff_base_seconds=float(env.get('BACKOFF_BASE_SECONDS', '0.005')),
            backoff_max_seconds=float(env.get('BACKOFF_MAX_SECONDS', '1000')),
            watch_timeout_seconds=int(env.get('WATCH_TIMEOUT_SECONDS', '300')),
            log_level=env.get('LOG_LEVEL', 'INFO').upper(),
        )

        if config.max_concurrent_reconciles < 1:
            raise ValueError("MAX_CONCURRENT_RECONCILES must be at least 1")
        if config.backoff_base_seconds <= 0 or config.backoff_max_seconds < config.backoff_base_seconds:
            raise ValueError("BACKOFF_BASE_SECONDS must be positive and not above BACKOFF_MAX_SECONDS")

        return config
