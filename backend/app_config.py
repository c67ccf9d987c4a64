"""
Runtime configuration, read from the environment (and a local .env file).

Configuration (via .env):
    AMI_HOST, AMI_PORT, AMI_USERNAME, AMI_SECRET
    ARI_HOST, ARI_PORT, ARI_USERNAME, ARI_PASSWORD
    ARI_TIMEOUT, ARI_SESSION_POLICY ('per-call' or 'pooled')
    BULK_TIMEOUT, ENDPOINT_TECHNOLOGY
    QUEUE_MAPPINGS  JSON object, dialplan context -> queue display name
    SLA_TARGET_SECONDS
"""

import json
import logging
import os
from typing import Dict

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

from call_state import ConnectionParams

load_dotenv()
log = logging.getLogger(__name__)

SESSION_POLICIES = ('per-call', 'pooled')


class AppConfig(BaseModel):
    model_config = ConfigDict(frozen=True)

    ami: ConnectionParams
    ari: ConnectionParams
    ari_timeout: float = 5.0
    ari_session_policy: str = 'per-call'
    bulk_timeout: float = 20.0
    endpoint_technology: str = 'PJSIP'
    queue_mappings: Dict[str, str] = Field(default_factory=dict)
    sla_target_seconds: int = 30

    @field_validator('ari_session_policy')
    @classmethod
    def _known_policy(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in SESSION_POLICIES:
            raise ValueError(f"ari_session_policy must be one of {SESSION_POLICIES}")
        return v


def get_ami_connection() -> ConnectionParams:
    """AMI connection parameters from environment variables."""
    return ConnectionParams.coerce({
        'host': os.getenv('AMI_HOST', '127.0.0.1'),
        'port': os.getenv('AMI_PORT', '5038'),
        'username': os.getenv('AMI_USERNAME', ''),
        'password': os.getenv('AMI_SECRET', ''),
    })


def get_ari_connection() -> ConnectionParams:
    """ARI connection parameters from environment variables."""
    return ConnectionParams.coerce({
        'host': os.getenv('ARI_HOST', os.getenv('AMI_HOST', '127.0.0.1')),
        'port': os.getenv('ARI_PORT', '8088'),
        'username': os.getenv('ARI_USERNAME', ''),
        'password': os.getenv('ARI_PASSWORD', ''),
    })


def _queue_mappings_from_env() -> Dict[str, str]:
    raw = os.getenv('QUEUE_MAPPINGS', '').strip()
    if not raw:
        return {}
    try:
        mappings = json.loads(raw)
    except json.JSONDecodeError as e:
        log.warning(f"Ignoring QUEUE_MAPPINGS, not valid JSON: {e}")
        return {}
    if not isinstance(mappings, dict):
        log.warning("Ignoring QUEUE_MAPPINGS, expected a JSON object")
        return {}
    return {str(k): str(v) for k, v in mappings.items()}


def load_config() -> AppConfig:
    """Build the full application config. Raises InvalidConnectionError on bad credentials."""
    return AppConfig(
        ami=get_ami_connection(),
        ari=get_ari_connection(),
        ari_timeout=float(os.getenv('ARI_TIMEOUT', '5')),
        ari_session_policy=os.getenv('ARI_SESSION_POLICY', 'per-call'),
        bulk_timeout=float(os.getenv('BULK_TIMEOUT', '20')),
        endpoint_technology=os.getenv('ENDPOINT_TECHNOLOGY', 'PJSIP'),
        queue_mappings=_queue_mappings_from_env(),
        sla_target_seconds=int(os.getenv('SLA_TARGET_SECONDS', '30')),
    )
