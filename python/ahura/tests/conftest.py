from typing import Any, Dict

import pytest

from ahura.models.settings import ProvisionerSettings


@pytest.fixture
def settings(tmp_path: Any) -> ProvisionerSettings:
    return ProvisionerSettings(
        kubeconfig_dir=str(tmp_path / "kubeconfigs"),
        state_dir=str(tmp_path / "state"),
        status_backend="memory",
    )


@pytest.fixture
def password_payload() -> Dict[str, Any]:
    return {
        "clusterId": "c-1",
        "provider": "existing",
        "cluster": {"name": "demo", "location": "fra1", "k8s_minor": "1.30"},
        "auth": {"method": "password", "user": "ubuntu", "password": "s3cret-pw"},
        "nodes": {
            "cp-1": {"host": "10.0.0.1", "role": "control-plane", "cpu": 2},
            "wp-1": {"host": "10.0.0.2", "role": "worker"},
            "wp-2": {"host": "10.0.0.3", "role": "worker", "memory_mb": 4096},
        },
        "addresses": ["10.0.0.1", "10.0.0.2", "10.0.0.3"],
    }
