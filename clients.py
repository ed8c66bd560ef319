from azure.core.credentials import AzureKeyCredential
from azure.identity import DefaultAzureCredential
from azure.search.documents import SearchClient
from azure.search.documents.aio import SearchClient as AsyncSearchClient
from azure.search.documents.indexes import SearchIndexClient
from azure.search.documents.indexes.aio import SearchIndexClient as AsyncSearchIndexClient
from azure.storage.blob import BlobServiceClient
from openai import AsyncAzureOpenAI

from settings import Settings


def search_credential(settings: Settings):
    if settings.search_api_key:
        return AzureKeyCredential(settings.search_api_key)
    return DefaultAzureCredential(exclude_interactive_browser_credential=True)


def _require_search_endpoint(settings: Settings) -> str:
    if not settings.search_endpoint:
        raise RuntimeError("Missing AZURE_SEARCH_ENDPOINT")
    return settings.search_endpoint


def search_client(settings: Settings) -> SearchClient:
    return SearchClient(
        endpoint=_require_search_endpoint(settings),
        index_name=settings.search_index_name,
        credential=search_credential(settings),
    )


def search_index_client(settings: Settings) -> SearchIndexClient:
    return SearchIndexClient(
        endpoint=_require_search_endpoint(settings),
        credential=search_credential(settings),
    )


# The server path always runs with an API key; the key is a required variable.
def async_search_client(settings: Settings) -> AsyncSearchClient:
    return AsyncSearchClient(
        endpoint=_require_search_endpoint(settings),
        index_name=settings.search_index_name,
        credential=AzureKeyCredential(settings.search_api_key or ""),
    )


def async_search_index_client(settings: Settings) -> AsyncSearchIndexClient:
    return AsyncSearchIndexClient(
        endpoint=_require_search_endpoint(settings),
        credential=AzureKeyCredential(settings.search_api_key or ""),
    )


def openai_client(settings: Settings) -> AsyncAzureOpenAI:
    if not settings.openai_api_key:
        raise RuntimeError("Missing AZURE_OPENAI_API_KEY")
    if not settings.openai_endpoint:
        raise RuntimeError("Missing AZURE_OPENAI_ENDPOINT")
    # 429 retries happen in with_retry, not inside the SDK.
    return AsyncAzureOpenAI(
        azure_endpoint=settings.openai_endpoint,
        api_key=settings.openai_api_key,
        api_version=settings.openai_api_version,
        timeout=settings.request_timeout,
        max_retries=0,
    )


def blob_service_client(settings: Settings) -> BlobServiceClient:
    if settings.storage_connection_string:
        return BlobServiceClient.from_connection_string(settings.storage_connection_string)

    if not settings.storage_account:
        raise RuntimeError("Missing AZURE_STORAGE_ACCOUNT (or AZURE_STORAGE_CONNECTION_STRING).")

    account_url = f"https://{settings.storage_account}.blob.core.windows.net"
    cred = DefaultAzureCredential(exclude_interactive_browser_credential=True)
    return BlobServiceClient(account_url=account_url, credential=cred)
