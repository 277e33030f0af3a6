from functools import lru_cache

from fastapi import Depends, Request

from ..config import settings
from ..db.chat_store import ChatStore
from ..llm.client import LLMClient
from ..orchestration.loop import TurnOrchestrator
from ..rendezvous.registry import ResultRendezvous
from ..tools.aggregator import ToolAggregator
from ..tools.builtin_server import BuiltinToolServer
from ..wiki.api_client import MediaWikiClient
from ..wiki.farm_client import WikiFarmClient


@lru_cache
def get_llm_client() -> LLMClient:
    return LLMClient()


@lru_cache
def get_chat_store() -> ChatStore:
    return ChatStore()


@lru_cache
def get_farm_client() -> WikiFarmClient:
    return WikiFarmClient()


@lru_cache
def get_mediawiki_client() -> MediaWikiClient:
    return MediaWikiClient()


# The registry and the built-in server are process-wide and live on app.state,
# created once by create_app().

def get_rendezvous(request: Request) -> ResultRendezvous:
    return request.app.state.rendezvous


def get_builtin_server(request: Request) -> BuiltinToolServer:
    return request.app.state.builtin_server


def get_tool_aggregator(
    builtin: BuiltinToolServer = Depends(get_builtin_server),
) -> ToolAggregator:
    return ToolAggregator(
        builtin,
        settings.wikihelper_mcp_url,
        disabled_tools=settings.disabled_wikihelper_tools,
    )


def get_orchestrator(
    llm: LLMClient = Depends(get_llm_client),
    chat_store: ChatStore = Depends(get_chat_store),
) -> TurnOrchestrator:
    return TurnOrchestrator(llm, chat_store)
