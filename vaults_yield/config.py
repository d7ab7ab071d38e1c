"""Runtime settings read from the environment."""

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from vaults_yield.constants import DEFAULT_RPC_TIMEOUT, VALIDATION_MIN_TVL_USD

logger = logging.getLogger(__name__)

# Environment variable holding the RPC URL for each supported chain.
RPC_URL_ENV_VARS: dict[str, str] = {
    "ethereum": "ETH_RPC_URL",
    "base": "BASE_RPC_URL",
    "arbitrum": "ARBITRUM_RPC_URL",
    "optimism": "OPTIMISM_RPC_URL",
    "polygon": "POLYGON_RPC_URL",
    "avalanche": "AVALANCHE_RPC_URL",
}

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_number(env: Mapping[str, str], name: str, default: float) -> float:
    value = env.get(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning("⚠️  Ignoring %s=%r (not a number); using %s", name, value, default)
        return default


@dataclass(frozen=True)
class ResolverSettings:
    """Everything the CLI needs to build a resolver."""

    rpc_urls: dict[str, str] = field(default_factory=dict)
    vaults_fyi_api_key: str | None = None
    enable_onchain_validation: bool = False
    onchain_validation_min_tvl: int = VALIDATION_MIN_TVL_USD
    rpc_timeout_s: float = DEFAULT_RPC_TIMEOUT
    use_cache: bool = True

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "ResolverSettings":
        env = os.environ if env is None else env
        rpc_urls = {chain: env[var].strip() for chain, var in RPC_URL_ENV_VARS.items() if env.get(var, "").strip()}
        return cls(
            rpc_urls=rpc_urls,
            vaults_fyi_api_key=env.get("VAULTS_FYI_API_KEY") or None,
            enable_onchain_validation=_env_bool(env, "ENABLE_ONCHAIN_VALIDATION", False),
            onchain_validation_min_tvl=int(
                _env_number(env, "ONCHAIN_VALIDATION_MIN_TVL", VALIDATION_MIN_TVL_USD)
            ),
            rpc_timeout_s=_env_number(env, "VAULTS_YIELD_RPC_TIMEOUT", DEFAULT_RPC_TIMEOUT),
        )

    def with_overrides(
        self,
        *,
        rpc_url: str | None = None,
        validate: bool | None = None,
        use_cache: bool | None = None,
    ) -> "ResolverSettings":
        """Apply CLI flags on top of environment settings. `rpc_url` is the Ethereum RPC."""
        rpc_urls = dict(self.rpc_urls)
        if rpc_url:
            rpc_urls["ethereum"] = rpc_url
        return ResolverSettings(
            rpc_urls=rpc_urls,
            vaults_fyi_api_key=self.vaults_fyi_api_key,
            enable_onchain_validation=self.enable_onchain_validation if validate is None else validate,
            onchain_validation_min_tvl=self.onchain_validation_min_tvl,
            rpc_timeout_s=self.rpc_timeout_s,
            use_cache=self.use_cache if use_cache is None else use_cache,
        )
