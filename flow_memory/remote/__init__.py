"""Remote team knowledge service and its HTTP client."""

from flow_memory.remote.client import TeamClient
from flow_memory.remote.service import KnowledgeService

__all__ = ["KnowledgeService", "TeamClient"]
