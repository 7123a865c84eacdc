import logging
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .config import DEFAULT_TABLE_LIMIT
from .enums import EndpointType
from .errors import BadRequest, ExecutionFailed, InternalError
from .models import Endpoint
from .query_engine import QueryEngineClient

Statement = Tuple[str, List[Any]]


def placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


def build_query(target: str, parameters: Sequence[Any], paging: Tuple[int, int]) -> Statement:
    # the stored text is author-configured; caller values are only ever bound
    return target, list(parameters)


def build_stored_procedure(target: str, parameters: Sequence[Any], paging: Tuple[int, int]) -> Statement:
    return f"CALL {target}({placeholders(len(parameters))})", list(parameters)


def build_function(target: str, parameters: Sequence[Any], paging: Tuple[int, int]) -> Statement:
    return f"SELECT {target}({placeholders(len(parameters))})", list(parameters)


def build_table(target: str, parameters: Sequence[Any], paging: Tuple[int, int]) -> Statement:
    limit, offset = paging
    return f"SELECT * FROM {target} LIMIT ? OFFSET ?", [limit, offset]


STATEMENT_BUILDERS: Dict[EndpointType, Callable[[str, Sequence[Any], Tuple[int, int]], Statement]] = {
    EndpointType.QUERY: build_query,
    EndpointType.STORED_PROCEDURE: build_stored_procedure,
    EndpointType.FUNCTION: build_function,
    EndpointType.TABLE: build_table,
}


def parse_paging(query_params: Mapping[str, str], default_limit: int = DEFAULT_TABLE_LIMIT) -> Tuple[int, int]:
    """Read ``limit``/``offset`` from the query string as integers."""
    try:
        limit = int(query_params["limit"]) if query_params.get("limit") else default_limit
        offset = int(query_params["offset"]) if query_params.get("offset") else 0
    except ValueError:
        raise BadRequest("limit and offset must be integers")

    if limit < 0 or offset < 0:
        raise BadRequest("limit and offset must not be negative")

    return limit, offset


def parse_parameters(body: Any) -> List[Any]:
    if not isinstance(body, dict) or body.get("parameters") is None:
        return []
    parameters = body["parameters"]
    if not isinstance(parameters, list):
        raise BadRequest("parameters must be an array")
    return parameters


def build_statement(endpoint: Endpoint, parameters: Sequence[Any], paging: Tuple[int, int]) -> Statement:
    try:
        endpoint_type = EndpointType(endpoint.type)
    except ValueError:
        raise InternalError(f"Unsupported endpoint type: {endpoint.type}")
    return STATEMENT_BUILDERS[endpoint_type](endpoint.target, parameters, paging)


async def dispatch(
    engine: QueryEngineClient,
    endpoint: Endpoint,
    parameters: Optional[Sequence[Any]] = None,
    paging: Tuple[int, int] = (DEFAULT_TABLE_LIMIT, 0),
) -> Dict[str, Any]:
    """Run the endpoint's operation once and return ``{rows, rowCount}``.

    The engine connection is released before this returns, whatever happens.
    """
    statement, binds = build_statement(endpoint, parameters or [], paging)

    try:
        async with engine.session() as session:
            result = await engine.execute(session, statement, binds)
    except Exception as e:
        message = engine.describe_error(e)
        logging.error(f"Error executing endpoint {endpoint.id} ({endpoint.type}): {message}")
        raise ExecutionFailed(message)

    rows = list(result.get("rows") or [])
    return {"rows": rows, "rowCount": len(rows)}
