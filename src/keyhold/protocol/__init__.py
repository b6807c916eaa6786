from .client import PROTOCOL_VERSION, AgentClient

__all__ = ["AgentClient", "PROTOCOL_VERSION"]
