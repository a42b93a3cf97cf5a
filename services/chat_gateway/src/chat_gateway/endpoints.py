"""Model -> backend routing table.

The table is read once at startup and never mutated afterwards, so it is
shared between requests without locking.

Two file formats are accepted. YAML (``.yaml`` / ``.yml``)::

    models:
      - model: Llama-3-70B-Instruct
        endpoint_name: lmi-llama-3-70B-Instruct
        backend: LMI
      - model: Phi-3-mini-4k-instruct
        endpoint_name: lmi-mme-20240627093303
        target_model: phi-3-mini-4k-instruct.tar.gz
        backend: LMI

and the older flat JSON map of model id to SageMaker endpoint name, where
every entry is routed to the LMI backend::

    {"Llama-3-70B-Instruct": "lmi-llama-3-70b-instruct"}
"""

import json
import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

logger = logging.getLogger(__name__)

BACKEND_LMI = "LMI"
BACKEND_BEDROCK = "BEDROCK"
BACKEND_KINDS = (BACKEND_LMI, BACKEND_BEDROCK)


class EndpointConfigError(Exception):
    pass


class ModelRoute(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str
    endpoint_name: str
    target_model: str | None = None
    inference_component: str | None = None
    backend: str = BACKEND_LMI

    @field_validator("backend")
    @classmethod
    def _known_backend(cls, value: str) -> str:
        value = value.strip().upper()
        if value not in BACKEND_KINDS:
            raise ValueError(f"backend must be one of: {', '.join(BACKEND_KINDS)}")
        return value


class EndpointDirectory:
    def __init__(self, routes: list[ModelRoute]) -> None:
        self._routes: dict[str, ModelRoute] = {}
        for route in routes:
            if route.model in self._routes:
                raise EndpointConfigError(f"duplicate model in endpoint config: {route.model}")
            self._routes[route.model] = route

    @classmethod
    def load(cls, path: str | Path) -> "EndpointDirectory":
        path = Path(path)
        try:
            raw = path.read_text(encoding="utf-8")
        except OSError as exc:
            raise EndpointConfigError(f"unable to read endpoint config {path}: {exc}") from exc

        if path.suffix.lower() == ".json":
            routes = cls._routes_from_json(raw)
        else:
            routes = cls._routes_from_yaml(raw)

        directory = cls(routes)
        logger.info("loaded %s model routes from %s", len(directory), path)
        return directory

    @staticmethod
    def _routes_from_yaml(raw: str) -> list[ModelRoute]:
        try:
            document = yaml.safe_load(raw) or {}
        except yaml.YAMLError as exc:
            raise EndpointConfigError(f"invalid endpoint config: {exc}") from exc
        if not isinstance(document, dict) or not isinstance(document.get("models", []), list):
            raise EndpointConfigError("endpoint config must contain a 'models' list")
        try:
            return [ModelRoute.model_validate(entry) for entry in document.get("models", [])]
        except ValidationError as exc:
            raise EndpointConfigError(f"invalid model route: {exc}") from exc

    @staticmethod
    def _routes_from_json(raw: str) -> list[ModelRoute]:
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise EndpointConfigError(f"invalid endpoint config: {exc}") from exc
        if not isinstance(document, dict):
            raise EndpointConfigError("JSON endpoint config must map model ids to endpoint names")
        routes = []
        for model, endpoint_name in document.items():
            if not isinstance(endpoint_name, str):
                raise EndpointConfigError(f"endpoint name for {model} must be a string")
            routes.append(ModelRoute(model=model, endpoint_name=endpoint_name, backend=BACKEND_LMI))
        return routes

    def lookup(self, model: str) -> ModelRoute | None:
        return self._routes.get(model)

    def routes(self) -> list[ModelRoute]:
        return list(self._routes.values())

    def __len__(self) -> int:
        return len(self._routes)
