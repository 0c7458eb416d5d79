# Copyright (c) 2020 Adam Souzis
# SPDX-License-Identifier: MIT
"""
Loads and validates the bootstrap config file.

The config is read once at startup into an immutable :class:`Config` that is
passed explicitly to every component.
"""
import os.path
from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Optional

from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

from . import DefaultNames
from .logs import getLogger
from .util import ConfigurationError, find_schema_errors, sensitive_str

logger = getLogger("kubeaid")

CONFIG_SCHEMA = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "type": "object",
    "required": ["clusterName", "kubeaidConfigRepoURL"],
    "properties": {
        "git": {
            "type": "object",
            "properties": {
                "username": {"type": "string"},
                "password": {"type": "string"},
                "sshPrivateKey": {"type": "string"},
                "useSSHAgentAuth": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
        "kubeaidRepoURL": {"type": "string"},
        "kubeaidConfigRepoURL": {"type": "string", "minLength": 1},
        "clusterName": {
            "type": "string",
            # becomes part of a branch name and a directory name
            "pattern": "^[a-z0-9]([-a-z0-9]*[a-z0-9])?$",
        },
        "argoCD": {
            "type": "object",
            "properties": {
                "repoName": {"type": "string"},
                "repoType": {"type": "string"},
                "repoUsername": {"type": "string"},
                "repoAuthToken": {"type": "string"},
            },
            "additionalProperties": False,
        },
        "kubePrometheusVersion": {"type": "string"},
        "grafanaURL": {"type": "string"},
        "connectObmondo": {"type": "boolean"},
        "managementClusterKubeconfig": {"type": "string"},
        "managementClusterKubectx": {"type": "string"},
        "branchPrefix": {"type": "string", "pattern": "^[A-Za-z0-9][-_.A-Za-z0-9]*$"},
        "pollInterval": {"type": "number", "exclusiveMinimum": 0},
        "mergeTimeout": {"type": ["number", "null"], "exclusiveMinimum": 0},
    },
}


@dataclass(frozen=True)
class GitConfig:
    username: str = ""
    password: str = ""
    ssh_private_key: str = ""
    # accepted so existing config files stay valid, the ssh agent is used
    # whenever no key or password is set regardless of this flag
    use_ssh_agent_auth: bool = False


@dataclass(frozen=True)
class ArgoCDConfig:
    repo_name: str = ""
    repo_type: str = "git"
    repo_username: str = ""
    repo_auth_token: str = ""


@dataclass(frozen=True)
class Config:
    cluster_name: str
    kubeaid_config_repo_url: str
    kubeaid_repo_url: str = ""
    git: GitConfig = field(default_factory=GitConfig)
    argocd: ArgoCDConfig = field(default_factory=ArgoCDConfig)
    kube_prometheus_version: str = ""
    grafana_url: str = ""
    connect_obmondo: bool = False
    management_cluster_kubeconfig: str = ""
    management_cluster_kubectx: str = ""
    branch_prefix: str = DefaultNames.BranchPrefix
    poll_interval: float = DefaultNames.PollInterval
    merge_timeout: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Config":
        errors = find_schema_errors(data, CONFIG_SCHEMA)
        if errors:
            raise ConfigurationError(f"invalid config: {errors[0]}", errors[1])
        git = data.get("git") or {}
        argocd = data.get("argoCD") or {}
        return cls(
            cluster_name=data["clusterName"],
            kubeaid_config_repo_url=data["kubeaidConfigRepoURL"],
            kubeaid_repo_url=data.get("kubeaidRepoURL", ""),
            git=GitConfig(
                username=git.get("username", ""),
                password=sensitive_str(git.get("password", "")),
                ssh_private_key=os.path.expanduser(git.get("sshPrivateKey", "")),
                use_ssh_agent_auth=git.get("useSSHAgentAuth", False),
            ),
            argocd=ArgoCDConfig(
                repo_name=argocd.get("repoName", ""),
                repo_type=argocd.get("repoType", "git"),
                repo_username=argocd.get("repoUsername", ""),
                repo_auth_token=sensitive_str(argocd.get("repoAuthToken", "")),
            ),
            kube_prometheus_version=data.get("kubePrometheusVersion", ""),
            grafana_url=data.get("grafanaURL", ""),
            connect_obmondo=data.get("connectObmondo", False),
            management_cluster_kubeconfig=os.path.expanduser(
                data.get("managementClusterKubeconfig", "")
            ),
            management_cluster_kubectx=data.get("managementClusterKubectx", ""),
            branch_prefix=data.get("branchPrefix", DefaultNames.BranchPrefix),
            poll_interval=float(data.get("pollInterval", DefaultNames.PollInterval)),
            merge_timeout=data.get("mergeTimeout"),
        )

    def with_overrides(self, **overrides: Any) -> "Config":
        return replace(
            self, **{k: v for k, v in overrides.items() if v is not None}
        )


def load_config(path: str) -> Config:
    try:
        with open(path) as f:
            data = YAML(typ="safe").load(f)
    except OSError as err:
        raise ConfigurationError(f"failed reading config file {path}: {err}")
    except YAMLError as err:
        raise ConfigurationError(f"failed parsing config file {path}: {err}")
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"config file {path} must contain a YAML mapping")
    config = Config.from_dict(data)
    logger.info("parsed config from the config file %s", path)
    return config
