"""
Amazon Bedrock LLM client wrapper with streaming, cancellation and retry logic.
"""

import random
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import GenerationCancelled, UpstreamUnavailable
from .config import BedrockLLMConfig
from .logging_config import get_logger

logger = get_logger(__name__)


class BedrockLLMError(UpstreamUnavailable):
    """Custom exception for Bedrock LLM errors."""
    pass


class BedrockLLM:
    """Amazon Bedrock LLM client with retry logic and error handling."""

    def __init__(self, config: BedrockLLMConfig):
        """
        Initialize Bedrock LLM client.

        Args:
            config: BedrockLLMConfig instance with connection parameters
        """
        self.config = config
        self.model_id = config.model_id

        # Create Bedrock runtime client with timeout configuration
        self.bedrock_runtime = boto3.client(
            'bedrock-runtime',
            region_name=config.region,
            config=BotoConfig(
                connect_timeout=config.connect_timeout,
                read_timeout=config.read_timeout,
                retries={'max_attempts': 0}  # We handle retries manually
            ))

        logger.info(f'Initialized Bedrock LLM client with model: {self.model_id}')

    def generate_response(self,
                          messages: List[Dict[str, Any]],
                          system_prompt: str,
                          max_tokens: Optional[int] = None,
                          temperature: Optional[float] = None,
                          stop_sequences: Optional[List[str]] = None,
                          on_delta: Optional[Callable[[str], None]] = None,
                          cancel_event: Optional[threading.Event] = None) -> Tuple[str, Optional[Dict[str, Any]]]:
        """
        Generate a streamed response using Bedrock LLM.

        A failed attempt is retried only while nothing has been streamed to
        ``on_delta``; once text reached the caller the error is raised.

        Args:
            messages: List of message dictionaries in Bedrock format
            system_prompt: System prompt for the conversation
            max_tokens: Maximum tokens to generate (uses config default if None)
            temperature: Temperature for generation (uses config default if None)
            stop_sequences: Stop sequences for generation
            on_delta: Called with each text fragment as it arrives
            cancel_event: When set, the stream is abandoned

        Returns:
            Tuple of (response_text, invoke_metrics)

        Raises:
            GenerationCancelled: If ``cancel_event`` was set mid-stream
            BedrockLLMError: If generation fails or exceeds the generation timeout
        """
        max_tokens = max_tokens or self.config.max_tokens
        temperature = self.config.temperature if temperature is None else temperature
        stop_sequences = stop_sequences or []
        deadline = time.monotonic() + self.config.generation_timeout

        system = [{'text': system_prompt}]
        inf_params = {
            'maxTokens': max_tokens,
            'temperature': temperature,
            'stopSequences': stop_sequences,
        }

        for attempt in range(self.config.retry_attempts):
            streamed = False
            try:
                logger.debug(f'Bedrock LLM request attempt {attempt + 1}/{self.config.retry_attempts}')

                stream = self.bedrock_runtime.converse_stream(modelId=self.model_id,
                                                              messages=messages,
                                                              system=system,
                                                              inferenceConfig=inf_params).get('stream')

                msg = ''
                invoke_metrics = None

                if stream:
                    try:
                        for event in stream:
                            if cancel_event is not None and cancel_event.is_set():
                                raise GenerationCancelled('Generation cancelled by caller')
                            if time.monotonic() > deadline:
                                raise BedrockLLMError(f'Generation exceeded {self.config.generation_timeout}s')
                            if 'contentBlockDelta' in event:
                                text = event['contentBlockDelta']['delta'].get('text', '')
                                msg += text
                                if text and on_delta is not None:
                                    on_delta(text)
                                    streamed = True
                            if 'metadata' in event:
                                invoke_metrics = {**event['metadata'].get('usage', {}), **event['metadata'].get('metrics', {})}
                    finally:
                        if hasattr(stream, 'close'):
                            stream.close()

                logger.debug(f'Bedrock LLM response generated successfully (length: {len(msg)})')
                return msg, invoke_metrics

            except (GenerationCancelled, BedrockLLMError):
                raise

            except (ClientError, BotoCoreError) as e:
                logger.warning(f'Bedrock LLM attempt {attempt + 1}/{self.config.retry_attempts} failed: {e}')

                if streamed:
                    raise BedrockLLMError(f'Bedrock LLM failed after partial output: {e}')
                if attempt < self.config.retry_attempts - 1:
                    # Exponential backoff with jitter, never past the deadline
                    delay = self.config.retry_delay * (2**attempt) + random.uniform(0, 1)
                    if time.monotonic() + delay > deadline:
                        raise BedrockLLMError(f'Bedrock LLM timed out: {e}')
                    time.sleep(delay)
                else:
                    raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts: {e}')

            except Exception as e:
                logger.error(f'Unexpected error in Bedrock LLM: {e}')
                raise BedrockLLMError(f'Unexpected Bedrock LLM error: {e}')

        raise BedrockLLMError(f'Bedrock LLM failed after {self.config.retry_attempts} attempts')

    def health_check(self) -> bool:
        """
        Perform a health check on the Bedrock LLM service.

        Returns:
            True if service is healthy, False otherwise
        """
        try:
            test_messages = [{'role': 'user', 'content': [{'text': 'Hi'}]}]
            response, _ = self.generate_response(messages=test_messages,
                                                 system_prompt="You are a helpful assistant. Respond with just 'OK'.",
                                                 max_tokens=10,
                                                 temperature=0.0)
            return len(response.strip()) > 0

        except Exception as e:
            logger.error(f'Bedrock LLM health check failed: {e}')
            return False
