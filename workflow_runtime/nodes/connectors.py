"""Handlers for nodes that talk to external systems.

Every connector client is injected when the handler is constructed, so each
process (or test) decides which clients its runs share.
"""

import base64
import json
import time
from typing import Any, Callable, Dict, Optional

import requests
from sqlalchemy import Engine, text
from sqlalchemy.exc import SQLAlchemyError

from ..core.exceptions import ConfigurationError
from ..core.execution_context import ExecutionContext, to_jsonable
from ..core.logging import get_logger
from ..core.node_registry import NodeHandler, config_option
from ..models.core import NodeResult

logger = get_logger(__name__)

BODY_METHODS = {"POST", "PUT", "PATCH", "DELETE"}


def _elapsed_ms(start_time: float) -> float:
    return round((time.time() - start_time) * 1000, 2)


class ApiRequestHandler(NodeHandler):
    """Performs an HTTP request through an injected requests.Session."""

    node_type = "api"
    description = "Call an HTTP endpoint"

    def __init__(self, session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.session = session or requests.Session()
        self.timeout = timeout

    def _build_headers(self, config: Dict[str, Any]) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        headers.update({str(k): str(v) for k, v in (config.get("headers") or {}).items()})

        authentication = config.get("authentication")
        if authentication:
            token = str(authentication.get("token", ""))
            auth_type = authentication.get("type")
            if auth_type == "bearer":
                headers["Authorization"] = f"Bearer {token}"
            elif auth_type == "api-key":
                headers["X-API-Key"] = token
            elif auth_type == "basic":
                headers["Authorization"] = f"Basic {base64.b64encode(token.encode()).decode()}"
            else:
                raise ConfigurationError(f"Unsupported authentication type: {auth_type}", config_key="authentication")
        return headers

    def execute(self, config: Dict[str, Any], context: ExecutionContext) -> NodeResult:
        url = config.get("url")
        if not url:
            raise ConfigurationError("API node requires a 'url'", config_key="url")
        method = str(config.get("method") or "GET").upper()
        headers = self._build_headers(config)

        request_kwargs: Dict[str, Any] = {
            "headers": headers,
            "params": config.get("params"),
            "timeout": float(config.get("timeout") or self.timeout),
        }
        body = config.get("body")
        if body is not None and method in BODY_METHODS:
            if isinstance(body, str):
                try:
                    request_kwargs["json"] = json.loads(body)
                except ValueError:
                    request_kwargs["data"] = body
            else:
                request_kwargs["json"] = body

        logger.info(f"Executing API call: {method} {url}")
        start_time = time.time()

        try:
            response = self.session.request(method, url, **request_kwargs)
        except requests.RequestException as e:
            logger.warning(f"API call failed: {method} {url}: {e}")
            return NodeResult(
                output={
                    "status": 0,
                    "status_text": "Error",
                    "data": None,
                    "headers": {},
                    "method": method,
                    "url": url,
                    "response_time_ms": _elapsed_ms(start_time),
                    "success": False,
                    "error": str(e),
                },
                success=False,
                error=str(e)
            )

        try:
            data = response.json()
        except ValueError:
            data = response.text

        output = {
            "status": response.status_code,
            "status_text": response.reason,
            "data": data,
            "headers": dict(response.headers),
            "method": method,
            "url": url,
            "response_time_ms": _elapsed_ms(start_time),
            "success": response.ok,
        }

        if not response.ok:
            error = f"HTTP {response.status_code}: {response.reason}"
            output["error"] = error
            logger.warning(f"API call returned bad status: {method} {url}: {error}")
            return NodeResult(output=output, success=False, error=error)

        return NodeResult(output=output)


class DatabaseQueryHandler(NodeHandler):
    """Runs a SQL statement with bound parameters on an injected SQLAlchemy engine."""

    node_type = "database"
    description = "Run a SQL statement"

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine

    def execute(self, config: Dict[str, Any], context: ExecutionContext) -> NodeResult:
        if self.engine is None:
            raise ConfigurationError("Database node requires a configured database engine")

        query = config.get("query")
        if not query:
            raise ConfigurationError("Database node requires a 'query'", config_key="query")
        parameters = config_option(config, "parameters", "params", default={})
        if not isinstance(parameters, dict):
            raise ConfigurationError("Database parameters must be a mapping of bind names to values",
                                     config_key="parameters")
        operation = str(config.get("operation") or "select").upper()

        start_time = time.time()
        try:
            with self.engine.begin() as connection:
                result = connection.execute(text(query), parameters)
                if result.returns_rows:
                    fields = list(result.keys())
                    rows = [dict(row._mapping) for row in result]
                    row_count = len(rows)
                else:
                    fields = []
                    rows = []
                    row_count = result.rowcount
        except SQLAlchemyError as e:
            logger.warning(f"Database query failed: {e}")
            return NodeResult(
                output={
                    "operation": operation,
                    "query": query,
                    "row_count": 0,
                    "rows": [],
                    "fields": [],
                    "execution_time_ms": _elapsed_ms(start_time),
                    "success": False,
                    "error": str(e),
                },
                success=False,
                error=str(e)
            )

        return NodeResult(output={
            "operation": operation,
            "query": query,
            "row_count": row_count,
            "rows": to_jsonable(rows),
            "fields": fields,
            "execution_time_ms": _elapsed_ms(start_time),
            "success": True,
        })


class LLMHandler(NodeHandler):
    """
    Sends a prompt to an injected completion client.

    The client is called with keyword arguments ``prompt``, ``model``,
    ``temperature``, ``max_tokens`` and ``system_prompt`` and returns either
    the response text or a dict with ``response`` and optional ``tokens``.
    """

    node_type = "llm"
    description = "Generate text with a language model"

    def __init__(self, client: Optional[Callable[..., Any]] = None, default_model: str = "gpt-4"):
        self.client = client
        self.default_model = default_model

    def execute(self, config: Dict[str, Any], context: ExecutionContext) -> NodeResult:
        if self.client is None:
            raise ConfigurationError("No language model client configured for llm nodes")

        prompt = config.get("prompt") or ""
        model = config.get("model") or self.default_model
        temperature = float(config_option(config, "temperature", default=0.7))
        max_tokens = int(config_option(config, "max_tokens", "maxTokens", default=1000))
        system_prompt = config_option(config, "system_prompt", "systemPrompt", default="")

        output = {
            "model": model,
            "processed_prompt": prompt,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "system_prompt": system_prompt,
        }

        try:
            reply = self.client(
                prompt=prompt,
                model=model,
                temperature=temperature,
                max_tokens=max_tokens,
                system_prompt=system_prompt
            )
        except Exception as e:
            logger.warning(f"LLM call failed for model {model}: {e}")
            output.update({"response": None, "tokens": 0, "error": str(e)})
            return NodeResult(output=output, success=False, error=str(e))

        if isinstance(reply, dict):
            output["response"] = reply.get("response")
            output["tokens"] = reply.get("tokens", 0)
        else:
            output["response"] = reply
            output["tokens"] = 0
        return NodeResult(output=output)


class CommunicationHandler(NodeHandler):
    """
    Delivers a message through one of the injected channel senders.

    ``senders`` maps a channel name (email, sms, slack, ...) to a callable
    taking ``(message, config)``.
    """

    node_type = "communication"
    description = "Send a notification through a configured channel"

    def __init__(self, senders: Optional[Dict[str, Callable[[str, Dict[str, Any]], Any]]] = None):
        self.senders = dict(senders or {})

    def execute(self, config: Dict[str, Any], context: ExecutionContext) -> NodeResult:
        channel = config.get("channel") or "email"
        sender = self.senders.get(channel)
        if sender is None:
            raise ConfigurationError(f"No sender configured for communication channel '{channel}'",
                                     config_key="channel")

        message = config.get("message") or ""
        try:
            result = sender(message, config)
        except Exception as e:
            logger.warning(f"Communication via {channel} failed: {e}")
            return NodeResult(
                output={"sent": False, "channel": channel, "message": message, "error": str(e)},
                success=False,
                error=str(e)
            )

        return NodeResult(output={
            "sent": True,
            "channel": channel,
            "message": message,
            "result": result,
        })
