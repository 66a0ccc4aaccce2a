"""
Configuration management for AWS services and ledger settings.
"""

import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from dotenv import load_dotenv

load_dotenv()


@dataclass
class BedrockLLMConfig:
    """Configuration for Amazon Bedrock LLM service."""
    region: str
    model_id: str
    max_tokens: int
    temperature: float
    retry_attempts: int
    retry_delay: float
    connect_timeout: int
    read_timeout: int
    generation_timeout: float


@dataclass
class BedrockEmbedConfig:
    """Configuration for Amazon Bedrock Embed service."""
    region: str
    model_id: str
    dimension: int
    retry_attempts: int
    retry_delay: float
    timeout: int


@dataclass
class OpenSearchConfig:
    """Configuration for OpenSearch."""
    endpoint: str
    port: int
    region: str
    index_name: str
    dimension: int
    timeout: int
    retry_attempts: int
    retry_delay: float
    index_sync_wait: float
    service: str
    refresh: str


@dataclass
class LedgerConfig:
    """Configuration for invoice parsing and cost calculation."""
    max_selected_dates: int
    max_upload_bytes: int
    default_timezone: str
    dayfirst: bool
    daily_cap: Optional[Decimal]
    reconciliation_tolerance: Decimal
    similar_k: int


@dataclass
class MemoryConfig:
    """Configuration for conversational memory."""
    recent_window: int
    similar_k: int
    retention_days: int


@dataclass
class MCPConfig:
    """Configuration for MCP interface."""
    transport: str
    host: str
    port: int


@dataclass
class AppConfig:
    """Main application configuration."""
    environment: str
    log_level: str
    bedrock_llm: BedrockLLMConfig
    bedrock_embed: BedrockEmbedConfig
    opensearch: OpenSearchConfig
    ledger: LedgerConfig
    memory: MemoryConfig
    mcp: MCPConfig


def _optional_decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None or not value.strip():
        return None
    return Decimal(value.strip())


def load_config() -> AppConfig:
    """Load configuration from environment variables with defaults."""
    environment = os.getenv('ENVIRONMENT', 'development')

    # Bedrock configuration
    bedrock_llm_config = BedrockLLMConfig(region=os.getenv('BEDROCK_LLM_AWS_REGION', 'us-east-1'),
                                          model_id=os.getenv('BEDROCK_LLM_MODEL_ID', 'anthropic.claude-3-sonnet-20240229-v1:0'),
                                          max_tokens=int(os.getenv('BEDROCK_LLM_MAX_TOKENS', '2048')),
                                          temperature=float(os.getenv('BEDROCK_LLM_TEMPERATURE', '0.0')),
                                          retry_attempts=int(os.getenv('BEDROCK_LLM_RETRY_ATTEMPTS', '2')),
                                          retry_delay=float(os.getenv('BEDROCK_LLM_RETRY_DELAY', '1.0')),
                                          connect_timeout=int(os.getenv('BEDROCK_LLM_CONNECT_TIMEOUT', '10')),
                                          read_timeout=int(os.getenv('BEDROCK_LLM_READ_TIMEOUT', '60')),
                                          generation_timeout=float(os.getenv('BEDROCK_LLM_GENERATION_TIMEOUT', '90')))

    # Bedrock Embed configuration
    bedrock_embed_config = BedrockEmbedConfig(region=os.getenv('BEDROCK_EMBED_AWS_REGION', 'us-east-1'),
                                              model_id=os.getenv('BEDROCK_EMBED_MODEL_ID', 'amazon.titan-embed-text-v2:0'),
                                              dimension=int(os.getenv('BEDROCK_EMBED_DIMENSION', '1024')),
                                              retry_attempts=int(os.getenv('BEDROCK_EMBED_RETRY_ATTEMPTS', '2')),
                                              retry_delay=float(os.getenv('BEDROCK_EMBED_RETRY_DELAY', '0.5')),
                                              timeout=int(os.getenv('BEDROCK_EMBED_TIMEOUT', '10')))

    # Vector search configuration
    opensearch_config = OpenSearchConfig(endpoint=os.getenv('OPENSEARCH_ENDPOINT', 'localhost'),
                                         port=int(os.getenv('OPENSEARCH_PORT', '443')),
                                         region=os.getenv('OPENSEARCH_AWS_REGION', 'us-east-1'),
                                         index_name=os.getenv('OPENSEARCH_INDEX', 'transit_ledger'),
                                         dimension=int(os.getenv('OPENSEARCH_DIMENSION', '1024')),
                                         timeout=int(os.getenv('OPENSEARCH_TIMEOUT', '10')),
                                         retry_attempts=int(os.getenv('OPENSEARCH_RETRY_ATTEMPTS', '2')),
                                         retry_delay=float(os.getenv('OPENSEARCH_RETRY_DELAY', '0.5')),
                                         index_sync_wait=float(os.getenv('OPENSEARCH_INDEX_SYNC_WAIT', '15')),
                                         service=os.getenv('OPENSEARCH_SERVICE', 'aoss'),
                                         refresh=os.getenv('OPENSEARCH_REFRESH', 'wait_for'))

    # Ledger configuration
    ledger_config = LedgerConfig(max_selected_dates=int(os.getenv('LEDGER_MAX_SELECTED_DATES', '365')),
                                 max_upload_bytes=int(os.getenv('LEDGER_MAX_UPLOAD_BYTES', str(10 * 1024 * 1024))),
                                 default_timezone=os.getenv('LEDGER_DEFAULT_TIMEZONE', 'UTC'),
                                 dayfirst=os.getenv('LEDGER_DAYFIRST', 'true').lower() in ('1', 'true', 'yes'),
                                 daily_cap=_optional_decimal(os.getenv('LEDGER_DAILY_CAP')),
                                 reconciliation_tolerance=Decimal(os.getenv('LEDGER_RECONCILIATION_TOLERANCE', '0.005')),
                                 similar_k=int(os.getenv('LEDGER_SIMILAR_K', '10')))

    # Memory configuration
    memory_config = MemoryConfig(recent_window=int(os.getenv('MEMORY_RECENT_WINDOW', '6')),
                                 similar_k=int(os.getenv('MEMORY_SIMILAR_K', '4')),
                                 retention_days=int(os.getenv('MEMORY_RETENTION_DAYS', '30')))

    # MCP configuration
    mcp_config = MCPConfig(transport=os.getenv('MCP_TRANSPORT', 'sse'),
                           host=os.getenv('MCP_HOST', '127.0.0.1'),
                           port=int(os.getenv('MCP_PORT', '8000')))

    return AppConfig(environment=environment,
                     log_level=os.getenv('LOG_LEVEL', 'INFO'),
                     bedrock_llm=bedrock_llm_config,
                     bedrock_embed=bedrock_embed_config,
                     opensearch=opensearch_config,
                     ledger=ledger_config,
                     memory=memory_config,
                     mcp=mcp_config)


# Global configuration instance
config = load_config()
