"""
Amazon Bedrock service module.
Turns one orchestrator request into a stream of normalised LLM events.
"""

import boto3
import json
import logging
from typing import Iterator, List, Dict, Optional, Any
from botocore.exceptions import BotoCoreError, ClientError, NoCredentialsError
from dataclasses import dataclass
from dotenv import load_dotenv
from config import (
    aws_config,
    model_config,
    get_credentials_info,
    get_model_config,
    get_max_output_tokens,
    requires_inference_profile,
)


logger = logging.getLogger(__name__)
env_path = '.env'

# AWS error codes worth a caller-side retry
_THROTTLE_CODES = frozenset({
    "ThrottlingException",
    "TooManyRequestsException",
    "ServiceUnavailableException",
    "ModelNotReadyException",
})
_RETRYABLE_STREAM_ERRORS = frozenset({
    "throttlingException",
    "serviceUnavailableException",
    "internalServerException",
    "modelStreamErrorException",
})


class BedrockError(Exception):
    """Custom exception for Bedrock service errors"""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


@dataclass
class GenerationConfig:
    """Configuration for a single generation request"""
    max_tokens: int = 16000
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    top_k: Optional[int] = None
    stop_sequences: Optional[List[str]] = None

    # Throughput settings
    throughput_mode: str = "cross-region"

    @classmethod
    def from_model_config(cls) -> "GenerationConfig":
        return cls(
            max_tokens=model_config.max_tokens,
            temperature=model_config.temperature,
            throughput_mode=model_config.throughput_mode,
        )


class BedrockService:
    """
    Service class for Amazon Bedrock interactions.
    Implements the orchestrator's LLM client protocol through stream().
    """

    def __init__(
        self,
        model_id: Optional[str] = None,
        region: Optional[str] = None
    ):
        self.model_id = model_id or model_config.model_id
        self.region = region or aws_config.region

        self.client = self._create_client()
        logger.info(f"BedrockService initialized with model: {self.model_id} ({get_credentials_info()})")

    def _create_client(self) -> Any:
        """Create and configure the Bedrock runtime client"""
        load_dotenv(env_path, override=True)
        try:
            session_kwargs = {"region_name": self.region}

            if aws_config.has_profile():
                session_kwargs["profile_name"] = aws_config.profile_name
            elif aws_config.has_explicit_credentials():
                session_kwargs["aws_access_key_id"] = aws_config.access_key_id
                session_kwargs["aws_secret_access_key"] = aws_config.secret_access_key
                if aws_config.has_session_token():
                    session_kwargs["aws_session_token"] = aws_config.session_token

            session = boto3.Session(**session_kwargs)
            return session.client("bedrock-runtime")

        except NoCredentialsError:
            raise BedrockError("AWS credentials not configured.", code="API")
        except Exception as e:
            raise BedrockError(f"Failed to initialize Bedrock client: {e}", code="API")

    def _get_model_identifier(self, model_id: str, config: GenerationConfig) -> str:
        """Get the appropriate model identifier based on throughput mode"""
        if config.throughput_mode == "cross-region":
            if model_id.startswith(("us.", "eu.", "ap.")):
                return model_id
            elif requires_inference_profile(model_id):
                region_prefix = "us" if self.region.startswith("us-") else "eu" if self.region.startswith("eu-") else "us"
                return f"{region_prefix}.{model_id}"

        model_config_data = get_model_config(model_id)
        return model_config_data.get("base_id", model_id)

    def _format_messages_anthropic(
        self,
        messages: List[Dict],
        system_prompt: Optional[str],
        model_id: str,
        config: GenerationConfig,
        tools: Optional[List[Dict]] = None
    ) -> Dict[str, Any]:
        """Format request body for Anthropic Claude models with tool_use"""

        def _ensure_non_empty_content(content: Any) -> Any:
            """API requires non-empty content for all messages except optional final assistant."""
            if isinstance(content, str):
                return content if content.strip() else "(no content)"
            if isinstance(content, list):
                out = []
                for b in content:
                    if isinstance(b, dict) and b.get("type") == "text" and not (b.get("text") or "").strip():
                        out.append({**b, "text": "(no content)"})
                    else:
                        out.append(b)
                return out if out else [{"type": "text", "text": "(no content)"}]
            return content if content is not None else [{"type": "text", "text": "(no content)"}]

        formatted_messages = [
            {"role": msg["role"], "content": _ensure_non_empty_content(msg.get("content"))}
            for msg in messages
            if msg["role"] != "system"
        ]

        body: Dict[str, Any] = {
            "anthropic_version": "bedrock-2023-05-31",
            "max_tokens": min(config.max_tokens, get_max_output_tokens(model_id)),
            "messages": formatted_messages,
        }

        if config.temperature is not None:
            body["temperature"] = config.temperature
        elif config.top_p is not None:
            body["top_p"] = config.top_p
        if config.top_k is not None:
            body["top_k"] = config.top_k
        if config.stop_sequences:
            body["stop_sequences"] = config.stop_sequences

        if system_prompt:
            body["system"] = system_prompt
        if tools:
            body["tools"] = tools

        logger.debug(f"Request body keys: {list(body.keys())}, messages: {len(formatted_messages)}")
        return body

    def stream(self, request: Any) -> Iterator[Dict[str, Any]]:
        """Stream one request as normalised events.

        ``request`` carries ``messages``, ``tools``, ``system_prompt`` and an
        optional ``config`` (a GenerationConfig). This is a blocking
        generator; the orchestrator drains it on a worker thread.
        """
        return self.generate_response_stream(
            request.messages,
            system_prompt=request.system_prompt,
            config=request.config,
            tools=request.tools,
        )

    def generate_response_stream(
        self,
        messages: List[Dict],
        system_prompt: Optional[str] = None,
        model_id: Optional[str] = None,
        config: Optional[GenerationConfig] = None,
        tools: Optional[List[Dict]] = None
    ) -> Iterator[Dict[str, Any]]:
        """
        Generate a streaming response using Amazon Bedrock.
        Yields dictionaries with a 'type' key:
            text (text), tool_call_start (id, name), tool_call_delta (id, delta),
            tool_call_end (id), usage (input_tokens / output_tokens),
            done (stop_reason), error (message, code, retryable)
        """
        current_model = model_id or self.model_id
        gen_config = config or GenerationConfig.from_model_config()

        try:
            model_identifier = self._get_model_identifier(current_model, gen_config)
            request_body = self._format_messages_anthropic(
                messages, system_prompt, current_model, gen_config, tools=tools
            )

            logger.info(f"Streaming from model: {model_identifier}")

            response = self.client.invoke_model_with_response_stream(
                modelId=model_identifier,
                body=json.dumps(request_body),
                contentType="application/json",
                accept="application/json"
            )

            current_block_type = "text"
            current_tool_id = ""
            stop_reason = None

            for event in response["body"]:
                if "chunk" not in event:
                    # In-band stream exception, e.g. {"throttlingException": {...}}
                    name = next(iter(event), "unknown")
                    detail = event.get(name) or {}
                    yield {
                        "type": "error",
                        "message": detail.get("message", name),
                        "code": "THROTTLED" if name == "throttlingException" else "API",
                        "retryable": name in _RETRYABLE_STREAM_ERRORS,
                    }
                    return

                chunk = json.loads(event["chunk"]["bytes"])
                event_type = chunk.get("type", "")

                if event_type == "content_block_start":
                    block = chunk.get("content_block", {})
                    current_block_type = block.get("type", "text")
                    if current_block_type == "tool_use":
                        current_tool_id = block.get("id", "")
                        yield {
                            "type": "tool_call_start",
                            "id": current_tool_id,
                            "name": block.get("name", ""),
                        }

                elif event_type == "content_block_delta":
                    delta = chunk.get("delta", {})
                    delta_type = delta.get("type", "")
                    if delta_type == "text_delta":
                        text = delta.get("text", "")
                        if text:
                            yield {"type": "text", "text": text}
                    elif delta_type == "input_json_delta":
                        partial = delta.get("partial_json", "")
                        if partial:
                            yield {"type": "tool_call_delta", "id": current_tool_id, "delta": partial}

                elif event_type == "content_block_stop":
                    if current_block_type == "tool_use":
                        yield {"type": "tool_call_end", "id": current_tool_id}
                        current_tool_id = ""
                    current_block_type = "text"

                elif event_type == "message_start":
                    msg_usage = chunk.get("message", {}).get("usage", {})
                    if msg_usage:
                        yield {
                            "type": "usage",
                            "input_tokens": msg_usage.get("input_tokens", 0),
                            "output_tokens": msg_usage.get("output_tokens", 0),
                        }

                elif event_type == "message_delta":
                    stop_reason = chunk.get("delta", {}).get("stop_reason") or stop_reason
                    usage = chunk.get("usage", {})
                    if usage:
                        yield {"type": "usage", "output_tokens": usage.get("output_tokens", 0)}

                elif event_type == "message_stop":
                    yield {"type": "done", "stop_reason": stop_reason}
                    return

            yield {"type": "done", "stop_reason": stop_reason}

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            error_message = e.response.get('Error', {}).get('Message', str(e))
            logger.error(f"Bedrock streaming error: {error_code} - {error_message}")

            if error_code in ['ExpiredTokenException', 'InvalidSignatureException']:
                raise BedrockError("AWS credentials expired. Please refresh.", code="API")
            if error_code in _THROTTLE_CODES:
                raise BedrockError(f"Streaming error: {error_message}", code="THROTTLED")
            raise BedrockError(f"Streaming error: {error_message}", code="API")
        except BotoCoreError as e:
            logger.error(f"Bedrock connection error: {e}")
            raise BedrockError(f"Connection error: {e}", code="NETWORK")
