"""Flow Memory.

Persistent, semantically searchable project memory for AI coding sessions,
with team rules promoted through proposals and synced back to every member.
"""

from flow_memory.memory_manager import MemoryManager

__version__ = "0.1.0"
__all__ = ["MemoryManager"]
