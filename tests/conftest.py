"""Pytest configuration and shared fixtures."""
import pytest

from treestate import (
    Codec,
    DependencyGraphResolver,
    IncrementalEvaluator,
    SchemaRegistry,
    reset_codec_config,
)


@pytest.fixture(autouse=True)
def reset_registry_and_config():
    """Start every test with an empty schema cache and the default codec config."""
    SchemaRegistry.clear()
    reset_codec_config()

    yield

    SchemaRegistry.clear()
    reset_codec_config()


@pytest.fixture
def codec():
    """Provide a codec using the default configuration."""
    return Codec()


@pytest.fixture
def resolver():
    """Provide a dependency resolver."""
    return DependencyGraphResolver()


@pytest.fixture
def evaluator():
    """Provide an incremental evaluator."""
    return IncrementalEvaluator()
