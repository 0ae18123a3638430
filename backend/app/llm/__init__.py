"""
LLM Gateway Package

Public API::

    from app.llm import LLMGateway

    gateway = LLMGateway(config)
    response = await gateway.invoke(LLMGateway.build_messages(system, user))
"""

from app.llm.gateway import GatewayResponse, LLMGateway, build_chat_model

__all__ = [
    "GatewayResponse",
    "LLMGateway",
    "build_chat_model",
]
