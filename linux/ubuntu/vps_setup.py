#!/usr/bin/env python3
"""
VPS Setup Utility
-----------------

Provisions a fresh Ubuntu server for hosting Node.js and containerised
applications. The run is a fixed, strictly sequential pipeline:

  1. System update and upgrade
  2. Essential tools (curl, wget, git)
  3. NVM (Node Version Manager)
  4. Node.js LTS through NVM
  5. pnpm
  6. Docker CE (docker group membership, start on boot)
  7. Caddy reverse proxy (start on boot)
  8. PM2 process manager (start on boot, saved process list)
  9. UFW firewall allowing only SSH, HTTP and HTTPS

Every step checks whether its target is already present and skips the
install when it is, so the utility can be re-run safely. The first failing
command stops the whole run with exit code 1.

Usage:
  Run as root on the target host:
      sudo python3 vps_setup.py
  or, once installed with pip:
      sudo vps-setup --user deploy --home /home/deploy

Version: 1.0.0
"""

import argparse
import getpass
import logging
import os
import re
import shutil
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

import pyfiglet
from rich.align import Align
from rich.box import ROUNDED
from rich.console import Console, Group
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.style import Style
from rich.table import Table
from rich.text import Text
from rich.theme import Theme
from rich.traceback import install as install_rich_traceback


# ----------------------------------------------------------------
# Configuration & Constants
# ----------------------------------------------------------------
@dataclass
class AppConfig:
    """Configuration for a single provisioning run."""

    # Application info
    VERSION: str = "1.0.0"
    APP_NAME: str = "VPS Setup"
    APP_SUBTITLE: str = "Fresh Server Provisioning Utility"

    # Operation settings
    COMMAND_TIMEOUT: int = 1800  # apt upgrades on a fresh host can be slow
    REBOOT_DELAY: int = 5

    # Baseline command-line tools installed through apt
    ESSENTIAL_TOOLS: List[str] = field(
        default_factory=lambda: ["curl", "wget", "git"]
    )

    # Node.js toolchain
    NVM_INSTALL_URL: str = (
        "https://raw.githubusercontent.com/nvm-sh/nvm/v0.40.1/install.sh"
    )

    # Docker vendor repository
    DOCKER_PREREQUISITES: List[str] = field(
        default_factory=lambda: [
            "apt-transport-https",
            "ca-certificates",
            "curl",
            "software-properties-common",
        ]
    )
    DOCKER_GPG_URL: str = "https://download.docker.com/linux/ubuntu/gpg"
    DOCKER_REPO_URL: str = "https://download.docker.com/linux/ubuntu"
    DOCKER_KEYRING: str = "/etc/apt/keyrings/docker.asc"
    DOCKER_SOURCE_LIST: str = "/etc/apt/sources.list.d/docker.list"

    # Caddy vendor repository
    CADDY_PREREQUISITES: List[str] = field(
        default_factory=lambda: [
            "debian-keyring",
            "debian-archive-keyring",
            "apt-transport-https",
            "curl",
            "gnupg",
        ]
    )
    CADDY_GPG_URL: str = "https://dl.cloudsmith.io/public/caddy/stable/gpg.key"
    CADDY_SOURCES_URL: str = (
        "https://dl.cloudsmith.io/public/caddy/stable/debian.deb.txt"
    )
    CADDY_KEYRING: str = "/usr/share/keyrings/caddy-stable-archive-keyring.gpg"
    CADDY_SOURCE_LIST: str = "/etc/apt/sources.list.d/caddy-stable.list"

    # Firewall: services are allowed by name, verified by port
    FIREWALL_SERVICES: List[str] = field(
        default_factory=lambda: ["ssh", "http", "https"]
    )
    FIREWALL_PORTS: List[str] = field(default_factory=lambda: ["22", "80", "443"])

    # Invoking user's environment
    username: str = "root"
    user_home: Path = field(default_factory=lambda: Path("/root"))
    path: str = os.defpath
    nvm_dir: Path = field(default_factory=lambda: Path("/root/.nvm"))

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
        username: Optional[str] = None,
        home: Optional[Union[str, Path]] = None,
    ) -> "AppConfig":
        """
        Build a configuration from the invoking user's environment.

        Args:
            environ: Environment mapping, defaults to os.environ
            username: Overrides USER
            home: Overrides HOME

        Returns:
            AppConfig with username, home, search path and NVM_DIR resolved
        """
        env = os.environ if environ is None else environ
        user = username or env.get("USER") or env.get("SUDO_USER") or getpass.getuser()
        user_home = Path(home) if home else Path(env.get("HOME") or Path.home())
        nvm_dir = Path(env["NVM_DIR"]) if env.get("NVM_DIR") else user_home / ".nvm"
        return cls(
            username=user,
            user_home=user_home,
            path=env.get("PATH") or os.defpath,
            nvm_dir=nvm_dir,
        )

    def prepend_path(self, directory: str) -> None:
        """Put a directory at the front of the search path if it is not there yet."""
        entries = self.path.split(os.pathsep) if self.path else []
        if directory in entries:
            return
        self.path = os.pathsep.join([directory] + entries)

    def command_env(self) -> Dict[str, str]:
        """Environment passed to every command run by the setup."""
        env = os.environ.copy()
        env.update(
            {
                "PATH": self.path,
                "HOME": str(self.user_home),
                "NVM_DIR": str(self.nvm_dir),
                "DEBIAN_FRONTEND": "noninteractive",
            }
        )
        return env


# Status keys in pipeline order
SETUP_STATUS: Dict[str, Dict[str, str]] = {}
STATUS_KEYS: List[str] = [
    "system_update",
    "essential_tools",
    "nvm",
    "nodejs",
    "pnpm",
    "docker",
    "caddy",
    "pm2",
    "firewall",
]


def reset_status() -> None:
    """Mark every pipeline step as pending."""
    SETUP_STATUS.clear()
    for key in STATUS_KEYS:
        SETUP_STATUS[key] = {"status": "pending", "message": ""}


reset_status()


# ----------------------------------------------------------------
# Nord-Themed Colors and Rich Console
# ----------------------------------------------------------------
class NordColors:
    """Nord color palette for consistent theming throughout the application."""

    # Polar Night (dark background)
    POLAR_NIGHT_1: str = "#2E3440"
    POLAR_NIGHT_4: str = "#4C566A"

    # Snow Storm (light text)
    SNOW_STORM_1: str = "#D8DEE9"
    SNOW_STORM_2: str = "#E5E9F0"

    # Frost (blue accents)
    FROST_1: str = "#8FBCBB"
    FROST_2: str = "#88C0D0"
    FROST_3: str = "#81A1C1"
    FROST_4: str = "#5E81AC"

    # Aurora (other accents)
    RED: str = "#BF616A"
    YELLOW: str = "#EBCB8B"
    GREEN: str = "#A3BE8C"

    @classmethod
    def get_frost_gradient(cls, steps: int = 4) -> List[str]:
        """Returns a gradient using the frost color palette."""
        frosts = [cls.FROST_1, cls.FROST_2, cls.FROST_3, cls.FROST_4]
        return frosts[: max(1, min(steps, len(frosts)))]


console = Console(
    theme=Theme(
        {
            "info": f"bold {NordColors.FROST_2}",
            "warning": f"bold {NordColors.YELLOW}",
            "error": f"bold {NordColors.RED}",
            "success": f"bold {NordColors.GREEN}",
            "section": f"{NordColors.FROST_3} bold",
            "step": f"{NordColors.FROST_2}",
            "skip": f"{NordColors.YELLOW}",
        }
    )
)

logger = logging.getLogger("vps_setup")


# ----------------------------------------------------------------
# Custom Exceptions
# ----------------------------------------------------------------
class SetupError(Exception):
    """Base exception for setup errors."""

    pass


class ExecutionError(SetupError):
    """Raised when a command cannot be executed at all."""

    pass


class StepFailedError(ExecutionError):
    """Raised when a checked command exits with a non-zero status."""

    def __init__(self, step: str, returncode: Optional[int] = None, detail: str = ""):
        self.step = step
        self.returncode = returncode
        self.detail = detail
        message = f"{step} failed"
        if returncode is not None:
            message += f" (exit code {returncode})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class PathResolutionError(SetupError):
    """Raised when an installed binary cannot be found on the search path."""

    pass


class VerificationError(SetupError):
    """Raised when a post-install verification does not hold."""

    pass


class PrivilegeError(SetupError):
    """Raised when the utility is not running as root."""

    pass


# ----------------------------------------------------------------
# Logging and Banner Helpers
# ----------------------------------------------------------------
class PlainFormatter(logging.Formatter):
    """File formatter that renders rich markup as plain text."""

    def format(self, record: logging.LogRecord) -> str:
        if getattr(record, "markup", False):
            record = logging.makeLogRecord(record.__dict__)
            record.msg = Text.from_markup(record.getMessage()).plain
            record.args = None
        return super().format(record)


def setup_logging(
    log_file: Optional[Union[str, Path]] = None, verbose: bool = False
) -> logging.Logger:
    """
    Configure the utility logger.

    Console output goes through a RichHandler on stdout. A plain log file is
    only written when one is requested.

    Args:
        log_file: Optional path of a log file
        verbose: Show debug records (executed commands) on the console

    Returns:
        The configured logger
    """
    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    # Remove any existing handlers
    for h in logger.handlers[:]:
        logger.removeHandler(h)
        h.close()

    console_handler = RichHandler(
        console=console,
        rich_tracebacks=True,
        show_path=False,
        log_time_format="[%Y-%m-%d %H:%M:%S]",
    )
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(
            PlainFormatter(
                "[%(asctime)s] [%(levelname)s] %(message)s", "%Y-%m-%d %H:%M:%S"
            )
        )
        logger.addHandler(file_handler)
        try:
            os.chmod(log_path, 0o600)
        except OSError as e:
            logger.warning(f"Could not set permissions on log file {log_path}: {e}")

    return logger


def create_header(config: AppConfig) -> Panel:
    """
    Create an ASCII art header using Pyfiglet with a Nord-themed gradient.

    Returns:
        Panel: A Rich Panel containing the styled header.
    """
    term_width, _ = shutil.get_terminal_size((80, 24))
    fonts = ["slant", "small", "standard", "mini"]
    if term_width < 60:
        fonts = fonts[1:]

    ascii_art = ""
    for font in fonts:
        try:
            fig = pyfiglet.Figlet(font=font, width=min(term_width - 10, 100))
            ascii_art = fig.renderText(config.APP_NAME)
            if ascii_art.strip():
                break
        except pyfiglet.FigletError as e:
            logger.debug(f"Font {font} failed: {e}")

    if not ascii_art.strip():
        ascii_art = f"=== {config.APP_NAME} ===\n"

    lines = [line for line in ascii_art.splitlines() if line.strip()]
    colors = NordColors.get_frost_gradient(len(lines))
    combined = Text()
    for i, line in enumerate(lines):
        combined.append(Text(line, style=f"bold {colors[i % len(colors)]}"))
        if i < len(lines) - 1:
            combined.append("\n")

    return Panel(
        Align.center(combined),
        border_style=Style(color=NordColors.FROST_1),
        padding=(1, 2),
        box=ROUNDED,
        title=f"[bold {NordColors.SNOW_STORM_2}]v{config.VERSION}[/]",
        title_align="right",
        subtitle=f"[bold {NordColors.SNOW_STORM_1}]{config.APP_SUBTITLE}[/]",
        subtitle_align="center",
    )


def print_message(
    text: str,
    style: str = NordColors.FROST_2,
    prefix: str = "•",
    level: int = logging.INFO,
) -> None:
    """
    Log a styled, prefixed message.

    Args:
        text: The message to log
        style: The color to use on the console
        prefix: Symbol to prefix the message with
        level: Logging level of the record
    """
    logger.log(level, f"[{style}]{prefix} {escape(text)}[/]", extra={"markup": True})


def print_step(text: str) -> None:
    print_message(text, NordColors.FROST_3, "➜")


def print_success(text: str) -> None:
    print_message(text, NordColors.GREEN, "✓")


def print_skip(text: str) -> None:
    print_message(text, NordColors.YELLOW, "↷")


def print_warning(text: str) -> None:
    print_message(text, NordColors.YELLOW, "⚠", logging.WARNING)


def print_error(text: str) -> None:
    print_message(text, NordColors.RED, "✗", logging.ERROR)


def print_section(title: str) -> None:
    """Print a section header."""
    console.print()
    console.print(f"[section]{escape(title)}[/section]")
    console.print(f"[{NordColors.FROST_3}]{'─' * len(title)}[/]")
    logger.debug(f"--- {title} ---")


def status_report() -> None:
    """Display a table reporting the status of every pipeline step."""
    icons = {
        "success": "✓",
        "failed": "✗",
        "skipped": "↷",
        "pending": "?",
        "in_progress": "⋯",
    }
    styles = {
        "success": "success",
        "failed": "error",
        "skipped": "skip",
        "in_progress": "warning",
    }

    table = Table(
        show_header=True,
        header_style=f"bold {NordColors.FROST_1}",
        border_style=NordColors.FROST_3,
        box=ROUNDED,
        title=f"[bold {NordColors.FROST_2}]Setup Status Report[/]",
        title_justify="center",
        expand=True,
    )
    table.add_column("Task", style=f"bold {NordColors.FROST_2}")
    table.add_column("Status", justify="center")
    table.add_column("Message", style=NordColors.SNOW_STORM_1, ratio=3)

    counts: Dict[str, int] = {}
    for task, data in SETUP_STATUS.items():
        st = data["status"]
        counts[st] = counts.get(st, 0) + 1
        style = styles.get(st, "step")
        table.add_row(
            task.replace("_", " ").title(),
            f"[{style}]{icons.get(st, '?')} {st.upper()}[/]",
            data["message"],
        )

    summary = Text()
    summary.append("Status Summary: ", style=f"bold {NordColors.FROST_3}")
    summary.append(f"{counts.get('success', 0)} Succeeded", style=f"bold {NordColors.GREEN}")
    summary.append(" | ")
    summary.append(f"{counts.get('skipped', 0)} Skipped", style=f"bold {NordColors.YELLOW}")
    summary.append(" | ")
    summary.append(f"{counts.get('failed', 0)} Failed", style=f"bold {NordColors.RED}")
    summary.append(" | ")
    summary.append(
        f"{counts.get('pending', 0)} Pending", style=f"bold {NordColors.POLAR_NIGHT_4}"
    )

    console.print(
        Panel(
            Group(table, Align.center(summary)),
            border_style=Style(color=NordColors.FROST_4),
            padding=(0, 1),
            box=ROUNDED,
        )
    )


# ----------------------------------------------------------------
# Command Execution Helpers
# ----------------------------------------------------------------
def pipe(*commands: str) -> str:
    """Join shell commands into a pipeline that fails when any part fails."""
    return "set -o pipefail; " + " | ".join(commands)


def run_command(
    cmd: Union[List[str], str],
    env: Optional[Dict[str, str]] = None,
    check: bool = False,
    capture_output: bool = True,
    timeout: Optional[int] = AppConfig.COMMAND_TIMEOUT,
) -> subprocess.CompletedProcess:
    """
    Execute a system command.

    String commands run through bash so that pipelines can use pipefail.

    Args:
        cmd: Command to execute (list or string)
        env: Environment variables
        check: Whether to raise CalledProcessError on non-zero exit
        capture_output: Whether to capture stdout/stderr
        timeout: Command timeout in seconds

    Returns:
        subprocess.CompletedProcess object

    Raises:
        ExecutionError: If the command cannot be started or times out
    """
    cmd_str = cmd if isinstance(cmd, str) else " ".join(cmd)
    logger.debug(f"Executing: {cmd_str}")

    try:
        if isinstance(cmd, str):
            result = subprocess.run(
                cmd,
                env=env,
                check=check,
                shell=True,
                executable="/bin/bash",
                text=True,
                capture_output=capture_output,
                timeout=timeout,
            )
        else:
            result = subprocess.run(
                cmd,
                env=env,
                check=check,
                text=True,
                capture_output=capture_output,
                timeout=timeout,
            )
    except subprocess.TimeoutExpired as e:
        raise ExecutionError(f"Command timed out after {timeout} seconds: {cmd_str}") from e
    except OSError as e:
        raise ExecutionError(f"Error executing command: {cmd_str}: {e}") from e

    if result.stdout:
        logger.debug(result.stdout.strip())
    return result


def check_status(step: str, result: subprocess.CompletedProcess) -> None:
    """
    Inspect the exit status of the last command of a step.

    Args:
        step: Human readable name of the step
        result: Completed command

    Raises:
        StepFailedError: If the command exited with a non-zero status
    """
    if result.returncode != 0:
        stderr = (result.stderr or "").strip()
        if stderr:
            logger.debug(stderr)
        print_error(f"Error: {step} failed. Exiting.")
        detail = stderr.splitlines()[-1] if stderr else ""
        raise StepFailedError(step, result.returncode, detail)
    print_success(f"{step} completed successfully.")


def run_with_progress(
    desc: str, func: Callable[[], Any], task_name: Optional[str] = None
) -> Any:
    """
    Run a function with a Rich spinner and status tracking.

    Args:
        desc: Description of the task
        func: Function to run
        task_name: Key in SETUP_STATUS to update

    Returns:
        The return value of the function
    """
    if task_name:
        SETUP_STATUS[task_name] = {
            "status": "in_progress",
            "message": f"{desc} in progress...",
        }

    start = time.time()
    with Progress(
        SpinnerColumn(spinner_name="dots", style=f"bold {NordColors.FROST_1}"),
        TextColumn(f"[bold {NordColors.FROST_2}]{{task.description}}"),
        BarColumn(style=NordColors.FROST_4, complete_style=NordColors.FROST_2),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    ) as progress:
        progress.add_task(desc, total=None)
        try:
            result = func()
        except (KeyboardInterrupt, SystemExit):
            if task_name:
                SETUP_STATUS[task_name] = {"status": "failed", "message": "Interrupted"}
            raise
        except Exception as e:
            elapsed = time.time() - start
            if task_name:
                SETUP_STATUS[task_name] = {
                    "status": "failed",
                    "message": f"{desc} failed after {elapsed:.2f}s: {e}",
                }
            raise

    elapsed = time.time() - start
    if task_name:
        if result is False:
            SETUP_STATUS[task_name] = {
                "status": "skipped",
                "message": "Already installed",
            }
        else:
            SETUP_STATUS[task_name] = {
                "status": "success",
                "message": f"{desc} succeeded in {elapsed:.2f}s.",
            }
    return result


# ----------------------------------------------------------------
# Signal Handling
# ----------------------------------------------------------------
def signal_handler(signum: int, frame: Optional[Any]) -> None:
    """
    Stop the run on a termination signal.

    Args:
        signum: Signal number
        frame: Current stack frame
    """
    sig_name = f"signal {signum}"
    try:
        sig_name = signal.Signals(signum).name
    except ValueError:
        pass

    console.print()
    print_warning(f"Process interrupted by {sig_name}")
    sys.exit(128 + signum)


def setup_signal_handlers() -> None:
    """
    Register signal_handler for SIGTERM and SIGHUP.

    SIGINT keeps its default handler and surfaces as KeyboardInterrupt,
    which main() turns into exit code 130.
    """
    for sig in (signal.SIGTERM, signal.SIGHUP):
        try:
            signal.signal(sig, signal_handler)
        except (AttributeError, ValueError):
            pass


# ----------------------------------------------------------------
# Utility Functions
# ----------------------------------------------------------------
class Utils:
    """Utility methods for common operations."""

    @staticmethod
    def command_exists(cmd: str, path: Optional[str] = None) -> bool:
        """
        Check if a command exists in the system PATH.

        Args:
            cmd: Command name to check
            path: Search path to use instead of the process PATH

        Returns:
            True if the command exists, False otherwise
        """
        return shutil.which(cmd, path=path) is not None

    @staticmethod
    def check_root() -> None:
        """
        Ensure the script runs as root.

        Raises:
            PrivilegeError: If not running as root
        """
        if os.geteuid() != 0:
            raise PrivilegeError("This script must be run with root privileges")
        logger.debug("Root privileges confirmed.")


# ----------------------------------------------------------------
# Provisioning Steps
# ----------------------------------------------------------------
class Installer:
    """Shared command plumbing for the provisioning steps."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config

    def command_exists(self, cmd: str) -> bool:
        return Utils.command_exists(cmd, self.config.path)

    def run(self, cmd: Union[List[str], str]) -> subprocess.CompletedProcess:
        """Run a command without inspecting its status."""
        return run_command(cmd, env=self.config.command_env())

    def run_checked(
        self, step: str, cmd: Union[List[str], str]
    ) -> subprocess.CompletedProcess:
        """
        Run a command and stop the pipeline if it fails.

        Args:
            step: Human readable name used in the status log line
            cmd: Command to execute

        Returns:
            The completed command

        Raises:
            StepFailedError: If the command fails or cannot be started
        """
        try:
            result = self.run(cmd)
        except ExecutionError as e:
            print_error(f"Error: {step} failed. Exiting.")
            raise StepFailedError(step, detail=str(e)) from e
        check_status(step, result)
        return result

    def write_checked(self, step: str, target: Union[str, Path], content: str) -> None:
        """Write a configuration file as a checked step."""
        try:
            Path(target).write_text(content)
        except OSError as e:
            print_error(f"Error: {step} failed. Exiting.")
            raise StepFailedError(step, detail=str(e)) from e
        print_success(f"{step} completed successfully.")

    def apt_install(self, step: str, packages: List[str]) -> None:
        self.run_checked(step, ["apt-get", "install", "-y"] + packages)


class SystemUpdater(Installer):
    """Refreshes the package index and upgrades installed packages."""

    def update_system(self) -> bool:
        print_step("Updating and upgrading the system...")
        self.run_checked("Package index refresh", ["apt-get", "update"])
        self.run_checked("System upgrade", ["apt-get", "upgrade", "-y"])
        return True


class ToolInstaller(Installer):
    """Installs the baseline command-line tools."""

    def install_essential_tools(self) -> bool:
        """
        Install every missing tool of ESSENTIAL_TOOLS, then verify git.

        Returns:
            True if anything was installed, False if all tools were present
        """
        print_step("Checking and installing essential tools...")
        changed = False
        for tool in self.config.ESSENTIAL_TOOLS:
            if self.command_exists(tool):
                print_skip(f"{tool} is already installed.")
                continue
            print_step(f"Installing {tool}...")
            self.apt_install(f"{tool} installation", [tool])
            changed = True

        print_step("Verifying git installation...")
        result = self.run_checked("Git verification", ["git", "--version"])
        print_message(result.stdout.strip())
        return changed


class NodeToolchainInstaller(Installer):
    """Installs NVM, the Node.js LTS release and pnpm."""

    @property
    def nvm_script(self) -> Path:
        return self.config.nvm_dir / "nvm.sh"

    def nvm_command(self, command: str) -> List[str]:
        """Wrap an nvm invocation in a bash that has sourced nvm.sh."""
        return ["bash", "-c", f'source "{self.nvm_script}" && {command}']

    def install_nvm(self) -> bool:
        # nvm is a shell function, so presence is the loader script
        if self.nvm_script.is_file():
            print_skip("NVM is already installed.")
            return False
        print_step("Installing NVM...")
        self.config.nvm_dir.mkdir(parents=True, exist_ok=True)
        self.run_checked(
            "NVM installation", pipe(f"curl -o- {self.config.NVM_INSTALL_URL}", "bash")
        )
        return True

    def activate_node(self) -> bool:
        """
        Add the default nvm-managed node directory to the search path.

        Returns:
            True if a node binary directory was found
        """
        if not self.nvm_script.is_file():
            return False
        result = self.run(self.nvm_command("nvm which default"))
        lines = (result.stdout or "").strip().splitlines()
        if result.returncode != 0 or not lines:
            logger.debug("No default node version registered with nvm.")
            return False
        bin_dir = str(Path(lines[-1].strip()).parent)
        self.config.prepend_path(bin_dir)
        logger.debug(f"Using node binaries from {bin_dir}")
        return True

    def install_node(self) -> bool:
        self.activate_node()
        if self.command_exists("node"):
            print_skip("Node.js is already installed.")
            return False
        print_step("Installing latest Node.js LTS version...")
        self.run_checked("Node.js LTS installation", self.nvm_command("nvm install --lts"))
        self.activate_node()
        return True

    def install_pnpm(self) -> bool:
        if self.command_exists("pnpm"):
            print_skip("pnpm is already installed.")
            return False
        print_step("Installing pnpm...")
        self.run_checked("pnpm installation", ["npm", "install", "-g", "pnpm"])
        return True


class DockerInstaller(Installer):
    """Installs Docker CE from the vendor repository."""

    def repository_line(self, arch: str, codename: str) -> str:
        return (
            f"deb [arch={arch} signed-by={self.config.DOCKER_KEYRING}] "
            f"{self.config.DOCKER_REPO_URL} {codename} stable\n"
        )

    def install(self) -> bool:
        """
        Install Docker, add the user to the docker group and enable the service.

        Returns:
            True if Docker was installed, False if it was already present
        """
        if self.command_exists("docker"):
            print_skip("Docker is already installed.")
            return False

        cfg = self.config
        print_step("Installing Docker...")
        self.apt_install("Docker prerequisites installation", cfg.DOCKER_PREREQUISITES)

        keyring_dir = str(Path(cfg.DOCKER_KEYRING).parent)
        self.run_checked("Docker keyring directory creation", ["install", "-m", "0755", "-d", keyring_dir])
        self.run_checked(
            "Docker GPG key registration",
            ["curl", "-fsSL", cfg.DOCKER_GPG_URL, "-o", cfg.DOCKER_KEYRING],
        )

        arch = self.run_checked("Architecture detection", ["dpkg", "--print-architecture"]).stdout.strip()
        codename = self.run_checked("Release codename detection", ["lsb_release", "-cs"]).stdout.strip()
        self.write_checked(
            "Docker repository registration",
            cfg.DOCKER_SOURCE_LIST,
            self.repository_line(arch, codename),
        )

        self.run_checked("Package index refresh", ["apt-get", "update"])
        self.apt_install("Docker installation", ["docker-ce"])
        self.run_checked("Docker group membership", ["usermod", "-aG", "docker", cfg.username])

        print_step("Enabling Docker to start on boot...")
        self.run_checked("Docker auto-start configuration", ["systemctl", "enable", "docker"])
        return True


class CaddyInstaller(Installer):
    """Installs the Caddy reverse proxy from the Cloudsmith repository."""

    def install(self) -> bool:
        if self.command_exists("caddy"):
            print_skip("Caddy server is already installed.")
            return False

        cfg = self.config
        print_step("Installing Caddy server...")
        self.apt_install("Caddy prerequisites installation", cfg.CADDY_PREREQUISITES)
        self.run_checked(
            "Caddy GPG key registration",
            pipe(f"curl -1sLf '{cfg.CADDY_GPG_URL}'", f"gpg --dearmor --yes -o {cfg.CADDY_KEYRING}"),
        )
        self.run_checked(
            "Caddy repository registration",
            pipe(f"curl -1sLf '{cfg.CADDY_SOURCES_URL}'", f"tee {cfg.CADDY_SOURCE_LIST}"),
        )
        self.run_checked("Package index refresh", ["apt-get", "update"])
        self.apt_install("Caddy server installation", ["caddy"])

        print_step("Enabling Caddy to start on boot...")
        self.run_checked("Caddy auto-start configuration", ["systemctl", "enable", "caddy"])
        return True


class PM2Installer(Installer):
    """Installs PM2 and registers it with systemd for the invoking user."""

    def install(self) -> bool:
        """
        Install PM2, register its boot-start unit and save the process list.

        Returns:
            True if PM2 was installed, False if it was already present

        Raises:
            PathResolutionError: If pm2 cannot be found after installing it
        """
        if self.command_exists("pm2"):
            print_skip("PM2 is already installed.")
            return False

        cfg = self.config
        print_step("Installing PM2...")
        self.run_checked("PM2 installation", ["npm", "install", "-g", "pm2"])

        print_step("Setting up PM2 to start on boot...")
        pm2_path = shutil.which("pm2", path=cfg.path)
        if not pm2_path:
            print_error("Error: PM2 not found in PATH. Exiting.")
            raise PathResolutionError("PM2 not found in PATH")

        # The startup unit runs pm2 with node from its own install directory
        startup_path = os.pathsep.join([cfg.path, os.path.dirname(pm2_path)])
        self.run_checked(
            "PM2 startup configuration",
            [
                "env",
                f"PATH={startup_path}",
                pm2_path,
                "startup",
                "systemd",
                "-u",
                cfg.username,
                "--hp",
                str(cfg.user_home),
            ],
        )

        print_step("Saving PM2 process list...")
        self.run_checked("PM2 process list save", [pm2_path, "save"])
        return True


class FirewallConfigurator(Installer):
    """Applies the UFW policy and verifies the resulting rule set."""

    def is_active(self) -> bool:
        result = self.run(["ufw", "status"])
        return "Status: active" in (result.stdout or "")

    def apply_rules(self) -> None:
        self.run_checked("UFW default incoming policy", ["ufw", "default", "deny", "incoming"])
        self.run_checked("UFW default outgoing policy", ["ufw", "default", "allow", "outgoing"])
        for service in self.config.FIREWALL_SERVICES:
            self.run_checked(f"UFW allow {service}", ["ufw", "allow", service])

    def configure(self) -> bool:
        """
        Configure UFW and verify that the expected rules are in place.

        Re-running on an active firewall re-applies the policy, since ufw
        skips rules that already exist.

        Returns:
            True once the firewall is configured and verified
        """
        print_step("Setting up firewall rules...")
        if not self.command_exists("ufw"):
            print_step("Installing ufw...")
            self.apt_install("UFW installation", ["ufw"])

        if self.is_active():
            print_warning("UFW is already active. Updating rules...")
            self.apply_rules()
        else:
            print_step("Configuring UFW...")
            self.apply_rules()
            self.run_checked("UFW configuration", ["ufw", "--force", "enable"])

        self.verify_rules()
        return True

    def missing_ports(self, listing: str) -> List[str]:
        """
        Return the expected ports with no ALLOW rule in a numbered listing.

        Args:
            listing: Output of `ufw status numbered`

        Returns:
            Ports from FIREWALL_PORTS without a matching rule
        """
        targets = []
        for line in listing.splitlines():
            if "ALLOW" not in line:
                continue
            # only the "To" column names the port; drop the "[ 1]" rule number
            rule = re.sub(r"^\s*\[\s*\d+\]\s*", "", line)
            targets.append(rule.split("ALLOW", 1)[0])

        missing = []
        for port in self.config.FIREWALL_PORTS:
            pattern = re.compile(rf"(?<!\d){re.escape(port)}(?!\d)")
            if not any(pattern.search(target) for target in targets):
                missing.append(port)
        return missing

    def verify_rules(self) -> None:
        """
        Check each expected port and the default inbound policy.

        Raises:
            VerificationError: If a port rule is missing or inbound is not denied
        """
        numbered = self.run(["ufw", "status", "numbered"])
        missing = self.missing_ports(numbered.stdout or "")
        verbose = self.run(["ufw", "status", "verbose"])
        deny_incoming = "deny (incoming)" in (verbose.stdout or "")

        if missing or not deny_incoming:
            print_error("Error: UFW rules not set correctly. Please check manually.")
            problems = []
            if missing:
                problems.append(f"no allow rule for port(s) {', '.join(missing)}")
            if not deny_incoming:
                problems.append("default incoming policy is not deny")
            raise VerificationError("; ".join(problems))
        print_success("Firewall rules verification completed successfully.")


# ----------------------------------------------------------------
# Main Setup Orchestration
# ----------------------------------------------------------------
class VPSSetup:
    """Runs the provisioning steps in order and stops at the first failure."""

    def __init__(self, config: AppConfig) -> None:
        self.config = config
        self.updater = SystemUpdater(config)
        self.tools = ToolInstaller(config)
        self.node = NodeToolchainInstaller(config)
        self.docker = DockerInstaller(config)
        self.caddy = CaddyInstaller(config)
        self.pm2 = PM2Installer(config)
        self.firewall = FirewallConfigurator(config)

    def steps(self) -> List[Tuple[str, str, Callable[[], bool]]]:
        return [
            ("system_update", "System Update & Upgrade", self.updater.update_system),
            ("essential_tools", "Essential Tools", self.tools.install_essential_tools),
            ("nvm", "Node Version Manager", self.node.install_nvm),
            ("nodejs", "Node.js LTS", self.node.install_node),
            ("pnpm", "pnpm Package Manager", self.node.install_pnpm),
            ("docker", "Docker Engine", self.docker.install),
            ("caddy", "Caddy Reverse Proxy", self.caddy.install),
            ("pm2", "PM2 Process Manager", self.pm2.install),
            ("firewall", "UFW Firewall", self.firewall.configure),
        ]

    def run(self) -> int:
        """
        Run every provisioning step.

        Returns:
            int: Exit code (0 for success, 1 for failure)
        """
        start = time.time()
        steps = self.steps()
        for index, (task_name, title, func) in enumerate(steps, 1):
            print_section(f"Step {index}/{len(steps)}: {title}")
            try:
                run_with_progress(title, func, task_name=task_name)
            except SetupError as e:
                logger.error(f"Setup halted at step {index} ({title}): {e}")
                return 1

        elapsed = time.time() - start
        minutes, seconds = divmod(int(elapsed), 60)
        console.print()
        print_success("Setup complete! Firewall is active.")
        print_message(f"Finished in {minutes}m {seconds}s.")
        if "docker" in self._changed():
            print_message(
                f"Log out and back in for {self.config.username}'s docker group membership to apply."
            )
        return 0

    def _changed(self) -> List[str]:
        return [key for key, data in SETUP_STATUS.items() if data["status"] == "success"]


def schedule_reboot(delay: int = AppConfig.REBOOT_DELAY) -> None:
    """
    Restart the host after a short countdown.

    Args:
        delay: Seconds to wait before restarting
    """
    print_warning(f"The system will restart in {delay} seconds to apply all changes.")
    print_warning("You can cancel this restart by pressing Ctrl+C now.")
    with Progress(
        SpinnerColumn(spinner_name="dots", style=f"bold {NordColors.FROST_1}"),
        TextColumn(f"[bold {NordColors.YELLOW}]Restarting in"),
        BarColumn(bar_width=30, style=NordColors.FROST_4, complete_style=NordColors.RED),
        TextColumn(f"[bold {NordColors.YELLOW}]{{task.remaining:.0f}}s"),
        console=console,
        transient=True,
    ) as progress:
        task = progress.add_task("Restarting...", total=delay)
        for _ in range(delay):
            time.sleep(1)
            progress.advance(task)

    print_error("Restarting now...")
    result = run_command(["shutdown", "-r", "now"])
    if result.returncode != 0:
        print_error(f"Restart failed: {(result.stderr or '').strip()}")


# ----------------------------------------------------------------
# Main Entry Point
# ----------------------------------------------------------------
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="vps-setup",
        description="Provision a fresh Ubuntu server: tools, Node.js, Docker, Caddy, PM2 and UFW.",
    )
    parser.add_argument("--user", help="User that owns PM2 and joins the docker group (default: $USER)")
    parser.add_argument("--home", help="Home directory of that user (default: $HOME)")
    parser.add_argument("--log-file", help="Also write the log to this file")
    parser.add_argument("--verbose", action="store_true", help="Show executed commands and their output")
    parser.add_argument("--no-banner", action="store_true", help="Do not print the start-up banner")
    parser.add_argument("--reboot", action="store_true", help="Restart the host after a successful run")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the VPS Setup Utility.

    Returns:
        int: Exit code (0 for success, non-zero for failure)
    """
    args = parse_args(argv)
    install_rich_traceback(show_locals=False)
    setup_logging(args.log_file, args.verbose)
    setup_signal_handlers()
    reset_status()

    config = AppConfig.from_env(username=args.user, home=args.home)
    if not args.no_banner:
        console.print(create_header(config))

    try:
        Utils.check_root()
    except PrivilegeError as e:
        print_error(f"{e}!")
        print_message("Run with: sudo vps-setup", NordColors.YELLOW)
        return 1

    print_step(f"Provisioning for user {config.username} (home {config.user_home})")
    code = 1
    try:
        code = VPSSetup(config).run()
    except KeyboardInterrupt:
        print_warning("Process interrupted by user")
        code = 130
    finally:
        status_report()

    if code == 0 and args.reboot:
        schedule_reboot()
    return code


if __name__ == "__main__":
    sys.exit(main())
