"""Elasticsearch client configuration and connection utilities."""

from typing import Optional, Dict, Any

import structlog
from elasticsearch import Elasticsearch

from logprobe.exceptions import ConfigurationError
from logprobe.utils.config import Settings, get_settings

logger = structlog.get_logger()


def get_elasticsearch_client(settings: Optional[Settings] = None) -> Elasticsearch:
    """
    Create and return an Elasticsearch client based on environment configuration.

    Supports three authentication methods:
    1. Cloud ID with API Key (Elastic Cloud)
    2. URL with API Key
    3. URL with username/password

    Raises:
        ConfigurationError: If required configuration is missing
    """
    settings = settings or get_settings()

    if settings.cloud_id and settings.api_key:
        return Elasticsearch(
            cloud_id=settings.cloud_id,
            api_key=settings.api_key,
            request_timeout=settings.request_timeout,
        )

    if settings.url and settings.api_key:
        return Elasticsearch(
            hosts=[settings.url],
            api_key=settings.api_key,
            request_timeout=settings.request_timeout,
        )

    if settings.url and settings.username and settings.password:
        return Elasticsearch(
            hosts=[settings.url],
            basic_auth=(settings.username, settings.password),
            request_timeout=settings.request_timeout,
        )

    raise ConfigurationError(
        "Missing Elasticsearch configuration. Please set either:\n"
        "1. ELASTICSEARCH_CLOUD_ID + ELASTICSEARCH_API_KEY, or\n"
        "2. ELASTICSEARCH_URL + ELASTICSEARCH_API_KEY, or\n"
        "3. ELASTICSEARCH_URL + ELASTICSEARCH_USERNAME + ELASTICSEARCH_PASSWORD"
    )


def verify_connection(client: Elasticsearch) -> Dict[str, Any]:
    """
    Verify the Elasticsearch connection is working.

    Returns:
        Dict with cluster name and version

    Raises:
        ConnectionError: If connection fails
    """
    try:
        info = client.info()
    except Exception as e:
        raise ConnectionError(f"Failed to connect to Elasticsearch: {e}") from e

    logger.info("Connected to Elasticsearch", cluster=info["cluster_name"])
    return {
        "cluster_name": info["cluster_name"],
        "version": info["version"]["number"],
    }
