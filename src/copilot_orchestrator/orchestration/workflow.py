"""LangGraph assembly of the active-run phase of a turn."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from langgraph.graph import END, StateGraph

from copilot_orchestrator.orchestration.state import TurnState

TurnNode = Callable[[TurnState], Awaitable[dict[str, Any]]]


def build_turn_graph(
    *,
    open_run: TurnNode,
    assemble_context: TurnNode,
    invoke_model: TurnNode,
    persist_turn: TurnNode,
):
    graph = StateGraph(TurnState)

    graph.add_node("open_run", open_run)
    graph.add_node("assemble_context", assemble_context)
    graph.add_node("invoke_model", invoke_model)
    graph.add_node("persist_turn", persist_turn)

    graph.set_entry_point("open_run")
    graph.add_edge("open_run", "assemble_context")
    graph.add_edge("assemble_context", "invoke_model")
    graph.add_edge("invoke_model", "persist_turn")
    graph.add_edge("persist_turn", END)

    return graph.compile()
