"""Shared fixtures for typedflow tests."""

from __future__ import annotations

import pytest
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from typedflow.core.registry import Registry
from typedflow.core.tracing import configure_tracing
from typedflow import settings


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture(autouse=True)
def prod_env(monkeypatch):
    """Tests run in prod unless they opt into dev."""
    monkeypatch.delenv(settings.env_var, raising=False)


@pytest.fixture
def registry() -> Registry:
    """A fresh registry, isolated from the process root registry."""
    return Registry()


@pytest.fixture
def span_exporter():
    """Collect finished flow spans in memory."""
    exporter = InMemorySpanExporter()
    provider = TracerProvider()
    provider.add_span_processor(SimpleSpanProcessor(exporter))
    configure_tracing(provider)
    yield exporter
    configure_tracing(None)
    provider.shutdown()

