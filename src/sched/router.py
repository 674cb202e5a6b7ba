import logging
import os
from dataclasses import dataclass, field
from typing import Dict, Sequence

try:
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - exercised via tests
    import tomli as tomllib

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveInt, ValidationError, field_validator

from .quota import DEFAULT_NEAR_LIMIT_THRESHOLD, Quota

logger = logging.getLogger(__name__)

CHAIN_ENV = "SCHED_MODEL_CHAIN"


def normalize_model_name(raw: str) -> str:
    return "-".join(raw.strip().split())


def normalize_provider_name(raw: str) -> str:
    return raw.strip().lower()


@dataclass(frozen=True)
class ModelRoute:
    provider: str
    model: str

    @property
    def key(self) -> str:
        provider = normalize_provider_name(self.provider)
        model = normalize_model_name(self.model).lower()
        return f"{provider}:{model}"

    def __str__(self) -> str:
        return f"{self.provider}:{self.model}"


@dataclass
class ProviderDef:
    name: str
    type: str
    base_url: str
    models: list[str]
    auth_env: str | None
    max_concurrent: int = 1
    min_spacing_ms: float = 1000.0
    timeout_s: float = 15.0
    temperature: float = 0.3
    max_tokens: int = 500
    json_mode: bool = True
    max_retries: int | None = None
    retry_base_delay_ms: float | None = None
    rate_limit_min_cooldown_ms: float | None = None


@dataclass
class SchedulerSettings:
    max_retries: int = 2
    retry_base_delay_ms: float = 1500.0
    rate_limit_min_cooldown_ms: float = 15_000.0
    quota_exhausted_cooldown_ms: float = 900_000.0
    near_limit_threshold: float = DEFAULT_NEAR_LIMIT_THRESHOLD


@dataclass
class ChainConfig:
    primary: list[str] = field(default_factory=list)
    fallback: list[str] = field(default_factory=list)
    override: str | None = None


@dataclass
class LoadedConfig:
    providers: Dict[str, ProviderDef]
    settings: SchedulerSettings = field(default_factory=SchedulerSettings)
    chain: ChainConfig = field(default_factory=ChainConfig)
    quotas: Dict[str, Quota] = field(default_factory=dict)
    mtimes: dict[str, float] = field(default_factory=dict)
    watch_paths: tuple[str, ...] = field(default_factory=tuple)

    def provider(self, name: str) -> ProviderDef | None:
        return self.providers.get(normalize_provider_name(name))


class _SchedulerModel(BaseModel):
    max_retries: int = Field(default=2, ge=0)
    retry_base_delay_ms: float = Field(default=1500.0, ge=0)
    rate_limit_min_cooldown_ms: float = Field(default=15_000.0, ge=0)
    quota_exhausted_cooldown_ms: float = Field(default=900_000.0, ge=60_000)
    near_limit_threshold: float = Field(default=DEFAULT_NEAR_LIMIT_THRESHOLD, ge=0.5, le=0.99)

    model_config = ConfigDict(extra="forbid")


class _ChainModel(BaseModel):
    primary: list[str] = Field(default_factory=list)
    fallback: list[str] = Field(default_factory=list)
    override: str | None = None

    model_config = ConfigDict(extra="forbid")

    @field_validator("primary", "fallback", mode="before")
    @classmethod
    def _as_list(cls, value: object) -> object:
        if value is None:
            return []
        if isinstance(value, str):
            value = [value]
        return [normalize_provider_name(str(item)) for item in value]


class _QuotaModel(BaseModel):
    rpm: PositiveInt | None = None
    tpm: PositiveInt | None = None
    rpd: PositiveInt | None = None

    model_config = ConfigDict(extra="forbid")


class _RouterModel(BaseModel):
    scheduler: _SchedulerModel = Field(default_factory=_SchedulerModel)
    chain: _ChainModel = Field(default_factory=_ChainModel)
    quotas: Dict[str, _QuotaModel] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


def _read_max_concurrent(name: str, raw_value: object) -> int:
    max_concurrent = int(raw_value)
    if max_concurrent < 1:
        raise ValueError(
            "Provider '{name}' defines invalid max_concurrent {value}; must be >= 1.".format(
                name=name,
                value=max_concurrent,
            )
        )
    return max_concurrent


def _read_models(raw_value: object) -> list[str]:
    if raw_value is None:
        return []
    if isinstance(raw_value, str):
        items = raw_value.split(",")
    else:
        items = [str(item) for item in raw_value]
    return [normalize_model_name(item) for item in items if item.strip()]


def _optional_float(d: dict, key: str) -> float | None:
    return float(d[key]) if d.get(key) is not None else None


def config_paths(config_dir: str, use_dummy: bool = False) -> tuple[str, str]:
    prov_path = os.path.join(config_dir, "providers.dummy.toml" if use_dummy else "providers.toml")
    router_path = os.path.join(config_dir, "router.yaml")
    if use_dummy:
        dummy_router = os.path.join(config_dir, "router.dummy.yaml")
        if os.path.exists(dummy_router):
            router_path = dummy_router
    return prov_path, router_path


def load_config(config_dir: str, use_dummy: bool = False) -> LoadedConfig:
    prov_path, router_path = config_paths(config_dir, use_dummy)
    with open(prov_path, "rb") as f:
        prov_data = tomllib.load(f)
    providers: Dict[str, ProviderDef] = {}
    for raw_name, d in prov_data.items():
        name = normalize_provider_name(raw_name)
        if name in providers:
            raise ValueError(f"Provider '{raw_name}' is defined more than once (names are case-insensitive).")
        providers[name] = ProviderDef(
            name=name,
            type=d.get("type", "openai"),
            base_url=d.get("base_url", ""),
            models=_read_models(d.get("models", d.get("model"))),
            auth_env=d.get("auth_env"),
            max_concurrent=_read_max_concurrent(name, d.get("max_concurrent", 1)),
            min_spacing_ms=max(0.0, float(d.get("min_spacing_ms", 1000))),
            timeout_s=float(d.get("timeout_s", 15)),
            temperature=float(d.get("temperature", 0.3)),
            max_tokens=int(d.get("max_tokens", 500)),
            json_mode=bool(d.get("json_mode", True)),
            max_retries=int(d["max_retries"]) if d.get("max_retries") is not None else None,
            retry_base_delay_ms=_optional_float(d, "retry_base_delay_ms"),
            rate_limit_min_cooldown_ms=_optional_float(d, "rate_limit_min_cooldown_ms"),
        )
    with open(router_path, "r", encoding="utf-8") as f:
        rdata = yaml.safe_load(f) or {}
    try:
        parsed = _RouterModel.model_validate(rdata)
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
            problems.append(f"{location}: {error.get('msg', 'invalid value')}")
        raise ValueError("; ".join(problems)) from exc
    sched = parsed.scheduler
    override = os.environ.get(CHAIN_ENV, "").strip() or parsed.chain.override
    chain = ChainConfig(
        primary=list(parsed.chain.primary),
        fallback=list(parsed.chain.fallback),
        override=override or None,
    )
    validate_chain_config(chain, providers)
    loaded = LoadedConfig(
        providers=providers,
        settings=SchedulerSettings(
            max_retries=int(sched.max_retries),
            retry_base_delay_ms=float(sched.retry_base_delay_ms),
            rate_limit_min_cooldown_ms=float(sched.rate_limit_min_cooldown_ms),
            quota_exhausted_cooldown_ms=float(sched.quota_exhausted_cooldown_ms),
            near_limit_threshold=float(sched.near_limit_threshold),
        ),
        chain=chain,
        quotas={
            key: Quota(rpm=q.rpm, tpm=q.tpm, rpd=q.rpd) for key, q in parsed.quotas.items()
        },
        mtimes={
            "providers": os.stat(prov_path).st_mtime,
            "router": os.stat(router_path).st_mtime,
        },
        watch_paths=(prov_path, router_path),
    )
    return loaded


def validate_chain_config(chain: ChainConfig, providers: Dict[str, ProviderDef]) -> None:
    known = {normalize_provider_name(name) for name in providers}
    for provider_name in list(chain.primary) + list(chain.fallback):
        if normalize_provider_name(provider_name) not in known:
            available = ", ".join(sorted(providers)) or "<none>"
            raise ValueError(
                "Chain references undefined provider '{provider}'. Available providers: {available}".format(
                    provider=provider_name,
                    available=available,
                )
            )


def parse_chain_override(raw: str) -> list[ModelRoute]:
    routes: list[ModelRoute] = []
    for token in raw.split(","):
        token = token.strip()
        if not token:
            continue
        provider, sep, model = token.partition(":")
        if not sep or not provider.strip() or not model.strip():
            logger.warning("ignoring malformed chain token=%r", token)
            continue
        routes.append(ModelRoute(provider=normalize_provider_name(provider), model=normalize_model_name(model)))
    return routes


def dedupe_routes(routes: Sequence[ModelRoute]) -> list[ModelRoute]:
    seen: set[str] = set()
    unique: list[ModelRoute] = []
    for route in routes:
        if route.key in seen:
            continue
        seen.add(route.key)
        unique.append(route)
    return unique


def build_chain(chain: ChainConfig, providers: Dict[str, ProviderDef], offset: int = 0) -> list[ModelRoute]:
    """Ordered, de-duplicated fallback routes for one request.

    The primary providers' model lists are interleaved one model at a time,
    starting with provider ``offset % len(primary)``; providers that run out
    of models drop out of the rotation. Fallback providers follow in order.
    An explicit override replaces the whole construction.
    """
    if chain.override:
        return dedupe_routes(parse_chain_override(chain.override))
    providers = {normalize_provider_name(name): defn for name, defn in providers.items()}
    queues: list[tuple[str, list[str]]] = [
        (name, list(providers[name].models))
        for name in map(normalize_provider_name, chain.primary)
        if name in providers
    ]
    routes: list[ModelRoute] = []
    if queues:
        turn = offset % len(queues)
        while any(models for _, models in queues):
            name, models = queues[turn]
            if models:
                routes.append(ModelRoute(provider=name, model=models.pop(0)))
            turn = (turn + 1) % len(queues)
    for name in map(normalize_provider_name, chain.fallback):
        defn = providers.get(name)
        if defn is None:
            continue
        routes.extend(ModelRoute(provider=name, model=model) for model in defn.models)
    return dedupe_routes(routes)


class ChainPlanner:
    """Builds a fresh chain per request, rotating the primary start offset."""

    def __init__(self, offset: int = 0):
        self._offset = offset

    @property
    def offset(self) -> int:
        return self._offset

    def plan(self, config: LoadedConfig) -> list[ModelRoute]:
        offset = self._offset
        self._offset += 1
        return build_chain(config.chain, config.providers, offset)


class ConfigWatcher:
    def __init__(self, config_dir: str, *, use_dummy: bool = False):
        self._config_dir = config_dir
        self._use_dummy = use_dummy
        self._loaded = load_config(config_dir, use_dummy=use_dummy)
        self._failed_mtimes: tuple[float, float] | None = None

    @property
    def loaded(self) -> LoadedConfig:
        return self._loaded

    def refresh(self) -> bool:
        prov_path, router_path = config_paths(self._config_dir, self._use_dummy)
        try:
            providers_mtime = os.stat(prov_path).st_mtime
            router_mtime = os.stat(router_path).st_mtime
        except FileNotFoundError:
            return False
        mtimes = self._loaded.mtimes
        if providers_mtime == mtimes.get("providers") and router_mtime == mtimes.get("router"):
            return False
        if (providers_mtime, router_mtime) == self._failed_mtimes:
            # this edit was already rejected
            return False
        try:
            self._loaded = load_config(self._config_dir, use_dummy=self._use_dummy)
        except (OSError, ValueError, yaml.YAMLError) as exc:
            self._failed_mtimes = (providers_mtime, router_mtime)
            logger.error("config reload failed dir=%s detail=%s", self._config_dir, exc)
            return False
        self._failed_mtimes = None
        logger.info("config reloaded dir=%s", self._config_dir)
        return True

    def current(self) -> LoadedConfig:
        self.refresh()
        return self._loaded
