"""LLM client wrapper for Azure OpenAI API."""
import logging
import openai
from openai import AzureOpenAI
from config import settings
from errors import InferenceServiceError, ServiceFailure

logger = logging.getLogger("StatementImporter.LLM")

_client = None


def get_client() -> AzureOpenAI:
    """Get or create Azure OpenAI client singleton.

    SDK-level retries are disabled: the pipeline owns its retry policy.
    """
    global _client
    if _client is None:
        _client = AzureOpenAI(
            api_key=settings.AZURE_OPENAI_API_KEY,
            azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
            api_version=settings.AZURE_OPENAI_API_VERSION,
            max_retries=0,
        )
        logger.info("Azure OpenAI client initialized (endpoint=%s)", settings.AZURE_OPENAI_ENDPOINT)
    return _client


def _classify(exc: Exception) -> InferenceServiceError:
    """Map an OpenAI SDK exception onto a ServiceFailure kind."""
    if isinstance(exc, openai.APITimeoutError):
        return InferenceServiceError(ServiceFailure.TIMEOUT, str(exc))
    if isinstance(exc, openai.RateLimitError):
        # Azure/OpenAI report an exhausted budget as a 429 with this code
        if getattr(exc, "code", None) == "insufficient_quota":
            return InferenceServiceError(ServiceFailure.QUOTA_EXHAUSTED, str(exc))
        return InferenceServiceError(ServiceFailure.RATE_LIMITED, str(exc))
    if isinstance(exc, openai.APIStatusError) and exc.status_code == 402:
        return InferenceServiceError(ServiceFailure.QUOTA_EXHAUSTED, str(exc))
    return InferenceServiceError(ServiceFailure.UNAVAILABLE, str(exc))


def _content_of(response) -> str:
    content = response.choices[0].message.content if response.choices else None
    if not content or not content.strip():
        raise InferenceServiceError(ServiceFailure.EMPTY_RESPONSE)
    return content.strip()


def chat_completion(
    messages: list[dict],
    deployment: str = None,
    temperature: float = 0.2,
    max_tokens: int = 4096,
    response_format: dict = None,
    timeout: float = None,
) -> str:
    """Send a chat completion request and return the response text.

    Raises InferenceServiceError for rate limits, timeouts, quota exhaustion,
    empty replies and any other service failure.
    """
    client = get_client()
    kwargs = {
        "model": deployment or settings.AZURE_OPENAI_DEPLOYMENT,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }
    if response_format:
        kwargs["response_format"] = response_format
    if timeout:
        kwargs["timeout"] = timeout

    try:
        response = client.chat.completions.create(**kwargs)
    except openai.OpenAIError as e:
        raise _classify(e) from e
    return _content_of(response)


def chat_completion_with_image(
    prompt: str,
    image_base64: str,
    deployment: str = None,
    temperature: float = 0.2,
    max_tokens: int = 4096,
    timeout: float = None,
) -> str:
    """Send a chat completion with an image and return the response text."""
    client = get_client()
    kwargs = {}
    if timeout:
        kwargs["timeout"] = timeout
    try:
        response = client.chat.completions.create(
            model=deployment or settings.AZURE_OPENAI_VISION_DEPLOYMENT,
            messages=[
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:image/png;base64,{image_base64}"},
                        },
                    ],
                }
            ],
            temperature=temperature,
            max_tokens=max_tokens,
            **kwargs,
        )
    except openai.OpenAIError as e:
        raise _classify(e) from e
    return _content_of(response)
