"""Shared fixtures: a fake Ubuntu host that records every command it is asked to run."""

import os
import subprocess
from pathlib import Path

import pytest

import vps_setup

NODE_BIN = "/home/deploy/.nvm/versions/node/v22.11.0/bin"
NODE_TOOLS = {"node", "npm", "pnpm", "pm2"}
APT_BINARIES = {"docker-ce": "docker"}


class FakeHost:
    """In-memory stand-in for the package manager, nvm, npm and ufw."""

    def __init__(self, nvm_dir: Path, installed=(), ufw_active=False):
        self.nvm_dir = nvm_dir
        self.installed = set(installed)
        self.commands = []
        self.fail_on = []
        self.hidden_after_install = set()
        self.ufw_active = ufw_active
        self.ufw_defaults = {"incoming": "allow", "outgoing": "allow"}
        self.ufw_rules = []

    # -- shutil.which -------------------------------------------------
    def which(self, cmd, mode=os.F_OK | os.X_OK, path=None):
        if cmd not in self.installed:
            return None
        if cmd in NODE_TOOLS:
            if path is None or NODE_BIN not in path.split(os.pathsep):
                return None
            return f"{NODE_BIN}/{cmd}"
        return f"/usr/bin/{cmd}"

    # -- subprocess.run -----------------------------------------------
    def run(self, cmd, **kwargs):
        line = cmd if isinstance(cmd, str) else " ".join(cmd)
        self.commands.append(line)
        for pattern in self.fail_on:
            if pattern in line:
                return subprocess.CompletedProcess(cmd, 1, "", "simulated failure\n")
        returncode, stdout = self._apply(line)
        return subprocess.CompletedProcess(cmd, returncode, stdout, "")

    def ran(self, fragment):
        return [line for line in self.commands if fragment in line]

    def _apply(self, line):
        if "apt-get install -y" in line:
            for package in line.split("apt-get install -y", 1)[1].split():
                self.installed.add(APT_BINARIES.get(package, package))
        elif "nvm-sh/nvm" in line and "install.sh" in line:
            self.nvm_dir.mkdir(parents=True, exist_ok=True)
            (self.nvm_dir / "nvm.sh").write_text("# nvm\n")
        elif "nvm install --lts" in line:
            self.installed |= {"node", "npm"}
        elif "nvm which default" in line:
            if "node" not in self.installed:
                return 3, "N/A: version \"default\" is not yet installed.\n"
            return 0, f"{NODE_BIN}/node\n"
        elif line.startswith("npm install -g "):
            package = line.split()[-1]
            if package not in self.hidden_after_install:
                self.installed.add(package)
        elif line == "git --version":
            return 0, "git version 2.43.0\n"
        elif line == "dpkg --print-architecture":
            return 0, "amd64\n"
        elif line == "lsb_release -cs":
            return 0, "noble\n"
        elif line.startswith("ufw "):
            return 0, self._ufw(line.split()[1:])
        return 0, ""

    def _ufw(self, args):
        if args == ["status", "numbered"]:
            return self.render_numbered()
        if args == ["status", "verbose"]:
            state = "active" if self.ufw_active else "inactive"
            return (
                f"Status: {state}\n"
                f"Default: {self.ufw_defaults['incoming']} (incoming), "
                f"{self.ufw_defaults['outgoing']} (outgoing), disabled (routed)\n"
            )
        if args == ["status"]:
            return "Status: active\n" if self.ufw_active else "Status: inactive\n"
        if args[0] == "default":
            self.ufw_defaults[args[2]] = args[1]
        elif args[0] == "allow":
            if args[1] not in self.ufw_rules:
                self.ufw_rules.append(args[1])
        elif args == ["--force", "enable"]:
            self.ufw_active = True
        return ""

    def render_numbered(self):
        ports = {"ssh": "22/tcp", "http": "80/tcp", "https": "443/tcp"}
        lines = ["Status: active" if self.ufw_active else "Status: inactive", ""]
        lines.append("     To                         Action      From")
        lines.append("     --                         ------      ----")
        for i, service in enumerate(self.ufw_rules, 1):
            lines.append(f"[{i:2d}] {ports.get(service, service):<26} ALLOW IN    Anywhere")
        return "\n".join(lines) + "\n"


@pytest.fixture(autouse=True)
def fresh_status():
    vps_setup.reset_status()
    yield
    vps_setup.reset_status()
    # main() installs its own handlers and stops propagation to the root logger
    for handler in vps_setup.logger.handlers[:]:
        vps_setup.logger.removeHandler(handler)
        handler.close()
    vps_setup.logger.propagate = True


@pytest.fixture
def config(tmp_path):
    home = tmp_path / "home"
    home.mkdir()
    return vps_setup.AppConfig(
        username="deploy",
        user_home=home,
        path="/usr/local/bin:/usr/bin:/bin",
        nvm_dir=home / ".nvm",
        DOCKER_SOURCE_LIST=str(tmp_path / "docker.list"),
    )


@pytest.fixture
def host(monkeypatch, config):
    fake = FakeHost(config.nvm_dir)
    monkeypatch.setattr(vps_setup.subprocess, "run", fake.run)
    monkeypatch.setattr(vps_setup.shutil, "which", fake.which)
    return fake
