"""
Health probes for the generation, embedding and search backends.
"""

from typing import Any, Callable, Dict, Tuple

from .bedrock_embed import BedrockEmbed
from .bedrock_llm import BedrockLLM
from .config import AppConfig, config
from .logging_config import get_logger
from .opensearch_client import INDEX_TYPES, OpenSearchClient

logger = get_logger(__name__)


def _probe_llm(app_config: AppConfig) -> Dict[str, Any]:
    llm = BedrockLLM(app_config.bedrock_llm)
    return {'healthy': llm.health_check(), 'model': app_config.bedrock_llm.model_id}


def _probe_embed(app_config: AppConfig) -> Dict[str, Any]:
    embed = BedrockEmbed(app_config.bedrock_embed)
    return {'healthy': embed.health_check(), 'model': app_config.bedrock_embed.model_id}


def _probe_opensearch(app_config: AppConfig) -> Dict[str, Any]:
    opensearch = OpenSearchClient(app_config.opensearch)
    return {
        'healthy': opensearch.health_check(),
        'endpoint': app_config.opensearch.endpoint,
        'indices': [opensearch.index_name(t) for t in INDEX_TYPES]
    }


# component key -> (display name, probe)
PROBES: Dict[str, Tuple[str, Callable[[AppConfig], Dict[str, Any]]]] = {
    'bedrock_llm': ('Amazon Bedrock LLM', _probe_llm),
    'bedrock_embed': ('Amazon Bedrock Embed', _probe_embed),
    'opensearch': ('Amazon OpenSearch', _probe_opensearch),
}


def get_health_status(app_config: AppConfig = config) -> Dict[str, Any]:
    """Probe every backend; a probe that raises is reported unhealthy with its error.

    Returns:
        Dictionary keyed by component with at least 'healthy' and 'service'
    """
    status = {}
    for key, (service, probe) in PROBES.items():
        try:
            status[key] = {'service': service, **probe(app_config)}
        except Exception as e:
            logger.warning(f'{service} probe failed: {e}')
            status[key] = {'healthy': False, 'service': service, 'error': str(e)}
    return status


def check_health(app_config: AppConfig = config) -> bool:
    """True if all components are healthy."""
    all_healthy = all(s.get('healthy', False) for s in get_health_status(app_config).values())
    if all_healthy:
        logger.info('All system components are healthy')
    else:
        logger.warning('Some system components are unhealthy')
    return all_healthy
