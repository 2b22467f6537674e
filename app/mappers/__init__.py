"""
app/mappers package marker.
"""

from app.mappers.civitai_mapper import CivitAIModelMapper
from app.mappers.comfyui_mapper import ComfyUIWorkflowMapper
from app.mappers.danbooru_mapper import DanbooruPostMapper
from app.mappers.e621_mapper import E621PostMapper
from app.mappers.ollama_mapper import OllamaModelMapper
from app.mappers.tags import normalize_tag, normalize_tags

__all__ = [
    "CivitAIModelMapper",
    "ComfyUIWorkflowMapper",
    "DanbooruPostMapper",
    "E621PostMapper",
    "OllamaModelMapper",
    "normalize_tag",
    "normalize_tags",
]
