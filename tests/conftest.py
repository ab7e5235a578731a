import asyncio
import inspect
import json
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tenantidp_test_")
_tenants_path = Path(_test_tmp_dir) / "tenants.json"
_tenants_path.write_text(
    json.dumps(
        {
            "tenants": [
                {
                    "tenant_id": "acme",
                    "name": "Acme",
                    "frontend_login_url": "https://acme.example.com/auth/login",
                    "clients": [
                        {
                            "client_id": "acme-web",
                            "name": "Acme Web",
                            "redirect_uris": [
                                "https://app.acme.example.com/callback",
                                "https://app.acme.example.com/cb?source=idp",
                            ],
                            "confidential": True,
                            "client_secret": "acme-web-secret",
                        },
                        {
                            "client_id": "acme-spa",
                            "redirect_uris": ["http://localhost:5173/callback"],
                            "confidential": False,
                        },
                    ],
                },
                {
                    "tenant_id": "globex",
                    "name": "Globex",
                    "clients": [
                        {
                            "client_id": "globex-web",
                            "redirect_uris": ["https://globex.example.com/callback"],
                            "confidential": True,
                            "client_secret": "globex-web-secret",
                        }
                    ],
                },
            ]
        }
    )
)
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TENANTS_CONFIG", str(_tenants_path))
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("OIDC_ISSUER", "https://testserver")
# Empty REDIS_URL keeps replay, rate limit, and session state in-process and deterministic
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tenantidp.service.runtime import reset_runtime_for_tests  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
