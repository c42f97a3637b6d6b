# ahura/models/settings.py

from typing import Literal, Optional

from pydantic_settings import BaseSettings


class ProvisionerSettings(BaseSettings):
    """
    Pydantic settings for the provisioning pipeline.
    By default, these fields map to environment variables prefixed with `AHURA_`.
    For example, `AHURA_KUBECONFIG_DIR`, `AHURA_CALICO_URL`, etc.

    All `*_timeout` values are wall-clock ceilings in seconds for one phase
    (or one remote command, for `command_timeout`).
    """

    kubeconfig_dir: str = "/srv/kubeconfigs"
    default_pod_cidr: str = "10.244.0.0/16"
    default_k8s_series: str = "v1.31"
    calico_url: str = (
        "https://raw.githubusercontent.com/projectcalico/calico/v3.28.0/manifests/calico.yaml"
    )
    sandbox_image: str = "registry.k8s.io/pause:3.10"

    ssh_port: int = 22
    api_port: int = 6443
    connect_timeout: int = 20
    known_hosts_file: Optional[str] = None

    probe_timeout: float = 60.0
    bootstrap_timeout: float = 900.0
    init_timeout: float = 600.0
    api_ready_timeout: float = 300.0
    cni_timeout: float = 180.0
    join_token_timeout: float = 60.0
    api_reach_timeout: float = 30.0
    join_timeout: float = 300.0
    repair_timeout: float = 600.0
    kubeconfig_timeout: float = 60.0
    command_timeout: float = 120.0

    poll_base_delay: float = 1.0
    poll_max_delay: float = 8.0

    status_backend: Literal["memory", "file", "postgrest"] = "file"
    inventory_backend: Literal["memory", "postgrest"] = "postgrest"
    state_dir: str = "/var/lib/ahura"
    postgrest_url: str = "http://localhost:3000"
    postgrest_key: Optional[str] = None
    verify_ssl: bool = True

    class Config:
        # `AHURA_CALICO_URL=...` populates calico_url, and so on.
        env_prefix = "AHURA_"
