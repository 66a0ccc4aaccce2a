"""
MCP Interface Layer using fastmcp to expose the request router as tools.
"""
import base64
import binascii
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError

from .errors import MalformedInput, TenancyViolation, TransitLedgerError
from .models.requests import RequestEnvelope
from .services.request_router import RequestRouter
from .utils.config import config
from .utils.health_check import get_health_status
from .utils.logging_config import get_logger

logger = get_logger(__name__)

# Initialize FastMCP application
mcp = FastMCP('Transit Ledger')

_router: Optional[RequestRouter] = None


def get_router() -> RequestRouter:
    """Router shared by all tool calls, created on first use."""
    global _router
    if _router is None:
        _router = RequestRouter()
    return _router


def _decode_file(file_base64: str) -> bytes:
    try:
        return base64.b64decode(file_base64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise MalformedInput(f'File content is not valid base64: {e}')


def _run(operation: str, envelope_args: Dict[str, Any]) -> Dict[str, Any]:
    try:
        envelope = RequestEnvelope.create(**envelope_args)
        response = get_router().handle(envelope)
        logger.debug(f'MCP {operation} handled as {envelope.kind.value} for owner {envelope.owner_id}')
        return response.to_dict()
    except TenancyViolation as e:
        logger.error(f'Tenancy violation in MCP {operation}: {e}')
        raise ToolError(f'{operation} failed: access denied')
    except TransitLedgerError as e:
        logger.error(f'Error in MCP {operation}: {e}')
        raise ToolError(f'{operation} failed: {e}')


@mcp.tool()
def upload_invoice(owner_id: str,
                   session_id: str,
                   file_base64: str,
                   filename: str,
                   declared_format: Optional[str] = None,
                   timezone: Optional[str] = None,
                   dates: Optional[List[str]] = None,
                   query: Optional[str] = None) -> Dict[str, Any]:
    """Upload a transit invoice (CSV, PDF or JSON).

    Dates or a question sent with the upload are answered against the new
    invoice once it is stored.

    Args:
        owner_id: Owner of the invoice
        session_id: Conversation session
        file_base64: Base64-encoded file content
        filename: Original file name, used to infer the format
        declared_format: csv, pdf or json
        timezone: IANA timezone of the statement (default UTC)
        dates: Optional ISO dates to calculate right away
        query: Optional question about the invoice

    Returns:
        Response with the invoice summary, parse diagnostics and any follow-up result
    """
    try:
        file_bytes = _decode_file(file_base64)
    except MalformedInput as e:
        raise ToolError(f'upload_invoice failed: {e}')
    return _run('upload_invoice', {
        'owner_id': owner_id,
        'session_id': session_id,
        'file_bytes': file_bytes,
        'declared_format': declared_format,
        'filename': filename,
        'timezone': timezone,
        'dates': dates,
        'query': query,
    })


@mcp.tool()
def calculate_costs(owner_id: str, session_id: str, invoice_id: str, dates: List[str]) -> Dict[str, Any]:
    """Calculate the cost of selected dates of an invoice.

    Args:
        owner_id: Owner of the invoice
        session_id: Conversation session
        invoice_id: Invoice to calculate against
        dates: ISO YYYY-MM-DD dates

    Returns:
        Response whose breakdown itemizes each day, journey type and zone range
    """
    return _run('calculate_costs', {'owner_id': owner_id, 'session_id': session_id, 'invoice_id': invoice_id, 'dates': dates})


@mcp.tool()
def chat(owner_id: str,
         session_id: str,
         query: str,
         invoice_id: Optional[str] = None,
         dates: Optional[List[str]] = None) -> Dict[str, Any]:
    """Ask a question about an invoice, or about uploaded documents when no invoice is given.

    Args:
        owner_id: Owner of the data
        session_id: Conversation session
        query: Natural language question
        invoice_id: Invoice the question is about
        dates: Optional ISO dates to calculate and discuss

    Returns:
        Response with the answer and the sources it was grounded in
    """
    if not query or not query.strip():
        raise ToolError('chat failed: query is required')
    return _run('chat', {
        'owner_id': owner_id,
        'session_id': session_id,
        'query': query,
        'invoice_id': invoice_id,
        'dates': dates,
    })


@mcp.tool()
def ingest_document(owner_id: str, file_base64: str, filename: str) -> Dict[str, Any]:
    """Index a reference document (txt, md, csv or pdf) for general chat.

    Returns:
        Document id, file name and number of indexed chunks
    """
    try:
        chunks = get_router().documents.ingest(owner_id, _decode_file(file_base64), filename)
    except TransitLedgerError as e:
        logger.error(f'Error in MCP ingest_document: {e}')
        raise ToolError(f'ingest_document failed: {e}')
    return {'document_id': chunks[0].document_id, 'filename': filename, 'chunks': len(chunks)}


@mcp.tool()
def health() -> Dict[str, Any]:
    """Report the status of Bedrock and OpenSearch."""
    return get_health_status()


def main() -> None:
    mcp.run(transport=config.mcp.transport, host=config.mcp.host, port=config.mcp.port)


if __name__ == '__main__':
    main()
