"""
Shared fixtures for the Concierge test suite.

Provides an in-memory store and the stores built on it, a deterministic
embedder, default configs and the wired tool layer, so individual test modules
can focus on behavior rather than setup. Nothing here touches the network or
a model.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from concierge.capabilities.credentials import CredentialStore
from concierge.config import LoopConfig, ModelConfig, RetrievalConfig
from concierge.conversation import ConversationLog
from concierge.instructions import InstructionStore
from concierge.retrieval.index import RetrievalIndex
from concierge.store import DataStore
from concierge.tasks import TaskStore

from helpers import HashEmbedder, RecordingBus, build_tools


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

@pytest.fixture()
def store():
    data_store = DataStore(Path(":memory:"))
    data_store.initialize()
    yield data_store
    data_store.close()


@pytest.fixture()
def bus() -> RecordingBus:
    return RecordingBus()


@pytest.fixture()
def task_store(store, bus) -> TaskStore:
    return TaskStore(store, event_bus=bus)


@pytest.fixture()
def instruction_store(store) -> InstructionStore:
    return InstructionStore(store)


@pytest.fixture()
def conversation(store) -> ConversationLog:
    return ConversationLog(store)


@pytest.fixture()
def credentials(store) -> CredentialStore:
    return CredentialStore(store)


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

@pytest.fixture()
def embedder() -> HashEmbedder:
    return HashEmbedder()


@pytest.fixture()
def retrieval_config() -> RetrievalConfig:
    # Bag-of-words similarities are low; the production 0.7 would filter
    # every partial match.
    return RetrievalConfig(similarity_threshold=0.1, ann_enabled=False)


@pytest.fixture()
def index(store, embedder, retrieval_config) -> RetrievalIndex:
    return RetrievalIndex(store, embedder, retrieval_config)


# ---------------------------------------------------------------------------
# Configs and tools
# ---------------------------------------------------------------------------

@pytest.fixture()
def model_config() -> ModelConfig:
    return ModelConfig(api_key="test-key")


@pytest.fixture()
def loop_config() -> LoopConfig:
    return LoopConfig(max_iterations=10, history_window=10)


@pytest.fixture()
def tools(task_store, instruction_store, index):
    return build_tools(task_store, instruction_store, index)
