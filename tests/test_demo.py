"""演示脚本测试：内置场景在 Mock Provider 下跑通，结束后释放连接池。"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import asyncio

import api.dependencies as dependencies
from run_demo import run_demo_reports


def test_demo_reports_release_http_client(monkeypatch):
    monkeypatch.setenv("QRM_LLM_PROVIDER", "mock")
    monkeypatch.setenv("QRM_EMBEDDING_API_KEY", "")
    monkeypatch.setenv("QRM_EMBEDDING_CACHE_BACKEND", "memory")
    monkeypatch.setattr(dependencies, "_components", None)

    comp = dependencies.init_components()
    asyncio.run(run_demo_reports())

    assert comp.http_client.is_closed
    assert dependencies._components is None
