from langchain_openai import AzureChatOpenAI

from sqlagent.config import get_settings


def decision_model(temperature: float = 0.0):
    """Non-streaming, deterministic model for classification, drafting and review."""
    settings = get_settings()
    if not settings.use_azure:
        raise RuntimeError("AZURE_OPENAI_ENDPOINT and AZURE_OPENAI_API_KEY must be configured")

    return AzureChatOpenAI(
        azure_deployment=settings.AZURE_OPENAI_DEPLOYMENT,
        openai_api_version=settings.AZURE_OPENAI_API_VERSION,
        azure_endpoint=settings.AZURE_OPENAI_ENDPOINT,
        openai_api_key=settings.AZURE_OPENAI_API_KEY,
        temperature=temperature,
        streaming=False,
    )
