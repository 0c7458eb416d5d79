# Copyright (c) 2020 Adam Souzis
# SPDX-License-Identifier: MIT
"""
Generates the files for a cluster in the config repository.

Everything is written under the cluster directory (``k8s/<cluster>``)::

    argocd-apps/Chart.yaml
    argocd-apps/templates/<app>.yaml
    argocd-apps/values-<app>.yaml
    <cluster>-vars.jsonnet
    kube-prometheus/...              (output of KubeAid's build script)
    sealed-secrets/argo-cd/kubeaid-config.yaml
"""
import os
import os.path
import shutil
from typing import Any, Dict, List, Optional, Sequence

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from . import DefaultNames, templates_dir
from .auth import AuthHandle
from .config import Config
from .logs import getLogger
from .repo import GitRepo
from .shell import run_command
from .util import ConfigurationError, encode_base64, sensitive_str

logger = getLogger("kubeaid")

DEFAULT_ARGOCD_APPS = ("root", "argo-cd", "sealed-secrets", "kube-prometheus")


def _write_file(folder: str, filename: str, content: str) -> str:
    if not os.path.isdir(folder):
        os.makedirs(os.path.normpath(folder))
    filepath = os.path.join(folder, filename)
    with open(filepath, "w") as f:
        f.write(content)
    return filepath


def make_environment(searchpath: Optional[str] = None) -> Environment:
    return Environment(
        loader=FileSystemLoader(searchpath or templates_dir),
        undefined=StrictUndefined,
        keep_trailing_newline=True,
    )


def write_template(folder: str, filename: str, template: str, vars: Dict[str, Any], env: Environment) -> str:
    content = env.get_template(template).render(**vars)
    return _write_file(folder, filename, content)


class ManifestGenerator:
    def __init__(
        self,
        config: Config,
        cluster_dir: str,
        default_branch: str,
        workspace: str,
        auth: AuthHandle,
        apps: Sequence[str] = DEFAULT_ARGOCD_APPS,
        templates: Optional[str] = None,
    ):
        self.config = config
        self.cluster_dir = cluster_dir
        self.default_branch = default_branch
        self.workspace = workspace
        self.auth = auth
        self.apps = apps
        self.templates = templates or templates_dir
        self.env = make_environment(self.templates)

    @property
    def argocd_apps_dir(self) -> str:
        return os.path.join(self.cluster_dir, "argocd-apps")

    def argocd_template_vars(self) -> Dict[str, Any]:
        return dict(
            cluster_name=self.config.cluster_name,
            kubeaid_repo=self.config.kubeaid_repo_url,
            kubeaid_config_repo=self.config.kubeaid_config_repo_url,
            branch=self.default_branch,
        )

    def generate(self) -> List[str]:
        files = self.create_argocd_files()
        files.extend(self.create_sealed_secret_files())
        return files

    def create_argocd_files(self) -> List[str]:
        templates_out = os.path.join(self.argocd_apps_dir, "templates")
        vars = self.argocd_template_vars()
        files = []
        for app in self.apps:
            files.append(
                write_template(
                    templates_out,
                    f"{app}.yaml",
                    f"argocd-apps/templates/{app}.yaml.j2",
                    vars,
                    self.env,
                )
            )
            if app == "root":
                logger.info("generated file for 'root' ArgoCD app")
            elif app == "kube-prometheus":
                files.extend(self.create_kube_prometheus_files())
                logger.info(
                    "generated files for 'kube-prometheus' ArgoCD app and ran kube-prometheus build script"
                )
            else:
                values = f"values-{app}.yaml"
                target = os.path.join(self.argocd_apps_dir, values)
                shutil.copyfile(os.path.join(self.templates, "argocd-apps", values), target)
                files.append(target)
                logger.info("generated files for '%s' ArgoCD app", app)

        chart = os.path.join(self.argocd_apps_dir, "Chart.yaml")
        shutil.copyfile(os.path.join(self.templates, "argocd-apps", "Chart.yaml"), chart)
        files.append(chart)
        return files

    def create_kube_prometheus_files(self) -> List[str]:
        if not self.config.kubeaid_repo_url:
            raise ConfigurationError("kubeaidRepoURL is required to build kube-prometheus")
        os.makedirs(os.path.join(self.cluster_dir, "kube-prometheus"), exist_ok=True)
        jsonnet = write_template(
            self.cluster_dir,
            f"{self.config.cluster_name}-vars.jsonnet",
            "cluster.jsonnet.j2",
            dict(
                kube_prometheus_version=self.config.kube_prometheus_version,
                grafana_url=self.config.grafana_url,
                connect_obmondo=self.config.connect_obmondo,
            ),
            self.env,
        )

        kubeaid = GitRepo.clone(
            self.config.kubeaid_repo_url,
            os.path.join(self.workspace, DefaultNames.KubeaidRepoDirectory),
            self.auth,
        )
        script = os.path.join(kubeaid.working_dir, "build", "kube-prometheus", "build.sh")
        logger.debug("running kube-prometheus build script %s", script)
        output = run_command([script, self.cluster_dir], cwd=kubeaid.working_dir)
        logger.info("kube-prometheus build script execution output: %s", output)
        return [jsonnet]

    def sealed_secret_vars(self) -> Dict[str, str]:
        argocd = self.config.argocd
        return dict(
            name=encode_base64(argocd.repo_name),
            url=encode_base64(self.config.kubeaid_config_repo_url),
            type=encode_base64(argocd.repo_type),
            username=sensitive_str(encode_base64(argocd.repo_username)),
            password=sensitive_str(encode_base64(argocd.repo_auth_token)),
        )

    def create_sealed_secret_files(self) -> List[str]:
        secret = write_template(
            os.path.join(self.cluster_dir, "sealed-secrets", "argo-cd"),
            "kubeaid-config.yaml",
            "sealed-secrets/argo-cd/kubeaid-config.yaml.j2",
            self.sealed_secret_vars(),
            self.env,
        )
        cmd = ["kubeseal"]
        if self.config.management_cluster_kubeconfig:
            cmd += ["--kubeconfig", self.config.management_cluster_kubeconfig]
        cmd += [
            "--controller-name",
            "sealed-secrets",
            "--controller-namespace",
            "kube-system",
            "--secret-file",
            secret,
            "--sealed-secret-file",
            secret,
        ]
        run_command(cmd)
        logger.info("created Sealed Secrets ArgoCD repo credentials file at %s", secret)
        return [secret]
