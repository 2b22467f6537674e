"""
app/connectors package marker.
"""

from app.connectors.base import BaseConnector, TRANSIENT_STATUS_CODES
from app.connectors.civitai_connector import CivitAIConnector
from app.connectors.comfyui_connector import ComfyUIWorkflowConnector
from app.connectors.danbooru_connector import DanbooruConnector
from app.connectors.e621_connector import E621Connector
from app.connectors.ollama_connector import OllamaConnector

__all__ = [
    "BaseConnector",
    "TRANSIENT_STATUS_CODES",
    "CivitAIConnector",
    "ComfyUIWorkflowConnector",
    "DanbooruConnector",
    "E621Connector",
    "OllamaConnector",
]
