#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Bifrost Manager - installs the bifrost binary as a systemd service and
manages it from a numbered menu (or one-shot subcommands).

Run as root on a Debian/Ubuntu host:
  sudo bifrost-manager            # interactive menu
  sudo bifrost-manager bootstrap  # sync the installer repo, then menu
"""

import os
import sys
import subprocess
import shutil
import shlex
import re
import time
import logging
import argparse
import ipaddress
import traceback
from pathlib import Path

import psutil
import yaml
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt, Confirm
from rich.table import Table

console = Console()
log = logging.getLogger("bifrost_manager")

# ─────────────────────────────────────────────────────────────
# ⚙️ SECTION 1: Settings
# ─────────────────────────────────────────────────────────────
SETTINGS_PATH = "/etc/bifrost/manager.yaml"
CRASH_LOG = "/var/log/bifrost_manager_crash.log"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
IP_ECHO_URL = "https://api.ipify.org"

DEFAULTS = {
    "repo": "dr-hoseyn/bifrost-installer",
    "branch": "main",
    "repo_dir": "/opt/bifrost-installer",
    "install_dir": "/opt/bifrost",
    "env_dir": "/etc/bifrost",
    "service_name": "bifrost",
    "app_user": "bifrost",
    "default_port": "8080",
    "log_file": "/var/log/bifrost_manager.log",
}
DERIVED = ("env_file", "service_file", "config_file")

cli_flags = {"dry_run": False}


class ManagerError(RuntimeError):
    """Expected failure reported to the user without a traceback."""


class CmdError(ManagerError):
    """Raised when a required external command fails."""


def load_settings(path=None, environ=None):
    """Defaults, then the optional settings YAML, then BIFROST_* env vars."""
    settings = dict(DEFAULTS)
    path = path or SETTINGS_PATH
    if os.path.exists(path):
        try:
            with open(path, "r") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ManagerError(f"Error parsing {path}: {e}") from e
        if not isinstance(data, dict):
            raise ManagerError(f"{path} must contain a mapping of settings")
        for key, value in data.items():
            if key not in DEFAULTS and key not in DERIVED:
                log.warning("ignoring unknown setting %r in %s", key, path)
                continue
            settings[key] = str(value)

    environ = os.environ if environ is None else environ
    for key in (*DEFAULTS, *DERIVED):
        value = environ.get(f"BIFROST_{key.upper()}")
        if value:
            settings[key] = value

    settings.setdefault("env_file", os.path.join(settings["env_dir"], "bifrost.env"))
    settings.setdefault("service_file", f"/etc/systemd/system/{settings['service_name']}.service")
    settings.setdefault("config_file", os.path.join(settings["install_dir"], "configs", "configs.yaml"))
    return settings


def setup_logging(log_file):
    try:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logging.basicConfig(filename=log_file, level=logging.DEBUG, format=LOG_FORMAT)
    except OSError:
        logging.basicConfig(level=logging.WARNING, format=LOG_FORMAT)
        log.warning("cannot write %s, logging to stderr", log_file)


# ─────────────────────────────────────────────────────────────
# 🔐 SECTION 2: Host Helpers
# ─────────────────────────────────────────────────────────────
def run_cmd(args, check=True, capture=True, readonly=False, env=None, timeout=None):
    """Runs a command; readonly commands still run in dry-run mode."""
    cmdline = shlex.join(args)
    if cli_flags["dry_run"] and not readonly:
        console.print(f"[yellow]DRY RUN[/yellow] {escape(cmdline)}")
        log.info("dry run: %s", cmdline)
        return subprocess.CompletedProcess(list(args), 0, stdout="", stderr="")

    log.debug("run: %s", cmdline)
    try:
        result = subprocess.run(
            list(args),
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.PIPE if capture else None,
            text=True,
            env=env,
            timeout=timeout,
        )
    except (OSError, subprocess.TimeoutExpired) as e:
        log.error("could not run %s: %s", cmdline, e)
        raise CmdError(f"Command could not run: {cmdline}\n{e}") from e

    if result.returncode != 0:
        if check:
            log.error("command failed (%s): %s", result.returncode, cmdline)
            raise CmdError(
                f"Command failed: {cmdline}\n--- stdout ---\n{result.stdout or ''}\n--- stderr ---\n{result.stderr or ''}"
            )
        log.debug("ignored exit %s: %s", result.returncode, cmdline)
    return result


def require_root():
    if os.geteuid() == 0:
        return
    if cli_flags["dry_run"]:
        console.print("[yellow]⚠️ Not root; continuing because this is a dry run.[/yellow]")
        return
    raise ManagerError("This action needs root. Run it again with sudo.")


def need_cmd(name):
    return shutil.which(name) is not None


def ensure_git():
    if need_cmd("git"):
        return
    console.print("[cyan]📦 git not found, installing it with apt...[/cyan]")
    env = os.environ.copy()
    env["DEBIAN_FRONTEND"] = "noninteractive"
    run_cmd(["apt-get", "update", "-y"], env=env)
    run_cmd(["apt-get", "install", "-y", "git"], env=env)


def user_exists(name):
    return run_cmd(["id", "-u", name], check=False, readonly=True).returncode == 0


def ensure_user(settings):
    user = settings["app_user"]
    if user_exists(user):
        return
    run_cmd(["useradd", "--system", "--no-create-home", "--shell", "/usr/sbin/nologin", user])
    console.print(f"[green]✔ Created system user {user}[/green]")


def detect_public_ip(timeout=5):
    if need_cmd("curl"):
        args = ["curl", "-s", "--max-time", str(timeout), IP_ECHO_URL]
    elif need_cmd("wget"):
        args = ["wget", "-qO-", f"--timeout={timeout}", IP_ECHO_URL]
    else:
        return None
    try:
        result = run_cmd(args, check=False, readonly=True, timeout=timeout + 2)
    except CmdError as e:
        log.warning("public IP lookup failed: %s", e)
        return None
    ip = (result.stdout or "").strip()
    return ip if validate_ip(ip) is None else None


def port_listeners(port):
    """(pid, process name) pairs bound to the given local port."""
    try:
        connections = psutil.net_connections(kind="inet")
    except psutil.AccessDenied:
        log.warning("not allowed to list sockets; skipping port check for %s", port)
        return []
    owners = []
    for conn in connections:
        if not conn.laddr or conn.laddr.port != port:
            continue
        if conn.status not in (psutil.CONN_LISTEN, psutil.CONN_NONE):
            continue
        name = "?"
        if conn.pid:
            try:
                name = psutil.Process(conn.pid).name()
            except psutil.Error:
                log.debug("process %s exited before it could be named", conn.pid)
        owners.append((conn.pid, name))
    return owners


# File operations honour --dry-run the same way run_cmd does.
def write_file(path, content, mode=None):
    if cli_flags["dry_run"]:
        console.print(f"[yellow]DRY RUN[/yellow] would write {path}")
        return
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        f.write(content)
    if mode is not None:
        os.chmod(path, mode)
    log.debug("wrote %s", path)


def copy_file(src, dst, mode):
    if cli_flags["dry_run"]:
        console.print(f"[yellow]DRY RUN[/yellow] would install {src} -> {dst}")
        return
    Path(dst).parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src, dst)
    os.chmod(dst, mode)
    log.debug("installed %s -> %s (%o)", src, dst, mode)


def copy_tree(src, dst):
    if cli_flags["dry_run"]:
        console.print(f"[yellow]DRY RUN[/yellow] would copy {src} -> {dst}")
        return
    shutil.copytree(src, dst)
    log.debug("copied %s -> %s", src, dst)


def make_dirs(path):
    if cli_flags["dry_run"]:
        return
    os.makedirs(path, exist_ok=True)


def remove_path(path):
    """Best-effort rm -rf."""
    if cli_flags["dry_run"]:
        console.print(f"[yellow]DRY RUN[/yellow] would remove {path}")
        return
    try:
        if os.path.isdir(path) and not os.path.islink(path):
            shutil.rmtree(path)
        elif os.path.lexists(path):
            os.remove(path)
        else:
            return
    except OSError as e:
        log.warning("could not remove %s: %s", path, e)
        console.print(f"[yellow]⚠️ Could not remove {path}: {e}[/yellow]")
        return
    log.info("removed %s", path)


# ─────────────────────────────────────────────────────────────
# 🔁 SECTION 3: Installer Repo Sync
# ─────────────────────────────────────────────────────────────
def sync_repo(settings):
    ensure_git()
    repo_dir = settings["repo_dir"]
    branch = settings["branch"]
    if os.path.isdir(os.path.join(repo_dir, ".git")):
        run_cmd(["git", "-C", repo_dir, "fetch", "--all"])
        run_cmd(["git", "-C", repo_dir, "reset", "--hard", f"origin/{branch}"])
    else:
        remove_path(repo_dir)
        url = f"https://github.com/{settings['repo']}.git"
        run_cmd(["git", "clone", "--branch", branch, url, repo_dir])
    log.info("installer repo synced at %s (%s)", repo_dir, branch)


# ─────────────────────────────────────────────────────────────
# 📊 SECTION 4: Version + Service State
# ─────────────────────────────────────────────────────────────
def binary_path(settings):
    return os.path.join(settings["install_dir"], "bifrost")


def current_version(settings):
    binary = binary_path(settings)
    if not (os.path.isfile(binary) and os.access(binary, os.X_OK)):
        return "Not installed"
    for flag in ("--version", "-v"):
        try:
            result = run_cmd([binary, flag], check=False, readonly=True, timeout=5)
        except CmdError:
            continue
        lines = (result.stdout or "").strip().splitlines()
        if result.returncode == 0 and lines:
            return lines[0].strip()
    return "Installed (version unknown)"


def service_status_short(settings):
    result = run_cmd(["systemctl", "is-active", "--quiet", settings["service_name"]], check=False, readonly=True)
    return "running" if result.returncode == 0 else "stopped"


def format_uptime(seconds):
    seconds = int(max(seconds, 0))
    days, rest = divmod(seconds, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m"
    return f"{minutes}m"


def service_process_info(settings):
    result = run_cmd(
        ["systemctl", "show", "-p", "MainPID", "--value", settings["service_name"]],
        check=False,
        readonly=True,
    )
    try:
        pid = int((result.stdout or "").strip() or 0)
    except ValueError:
        return None
    if pid <= 0:
        return None
    try:
        proc = psutil.Process(pid)
        with proc.oneshot():
            rss = proc.memory_info().rss
            started = proc.create_time()
        cpu = proc.cpu_percent(interval=0.1)
    except psutil.Error:
        return None
    return {
        "pid": pid,
        "rss_mb": round(rss / 1024 / 1024, 1),
        "cpu_percent": cpu,
        "uptime": format_uptime(time.time() - started),
    }


# ─────────────────────────────────────────────────────────────
# 🧪 SECTION 5: Input Validation
# ─────────────────────────────────────────────────────────────
PORT_RE = re.compile(r"^[0-9]{1,5}\Z")
NUMBER_RE = re.compile(r"[0-9]+")
PROTO_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_+-]{0,15}$")
HOST_RE = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?(\.[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?)*$")


def validate_ip(v):
    try:
        ipaddress.ip_address(v)
    except ValueError:
        return "IP must look like 203.0.113.10 or 2001:db8::1"
    return None


def validate_port(v):
    if not PORT_RE.match(v):
        return "Port must be numeric."
    if not (1 <= int(v) <= 65535):
        return "Port must be between 1 and 65535."
    return None


def validate_protocol(v):
    if NUMBER_RE.fullmatch(v):
        if int(v) > 255:
            return "Protocol number must be between 0 and 255."
        return None
    if not PROTO_NAME_RE.match(v):
        return "Protocol must be a name like tcp/udp or a number."
    return None


def validate_address(v):
    if not v or any(c.isspace() for c in v):
        return "Address cannot be empty or contain spaces."
    host, sep, port = v.rpartition(":")
    if not sep or (":" in host and not host.startswith("[")):
        # no port, or a bare IPv6 literal
        host, port = v, ""
    host = host.strip("[]")
    if not host or (not HOST_RE.match(host) and validate_ip(host) is not None):
        return "Address must be a hostname or IP, optionally followed by :port."
    if port:
        return validate_port(port)
    return None


EDITABLE_KEYS = {
    "listen_ip": validate_ip,
    "src_ip": validate_ip,
    "dst_ip": validate_ip,
    "address": validate_address,
    "protocol": validate_protocol,
    "port": validate_port,
}

FIELD_LABELS = {
    "listen_ip": "🎧 Listen IP",
    "src_ip": "📤 Source IP (this server)",
    "dst_ip": "📥 Destination IP (remote server)",
    "address": "🌐 Address",
    "protocol": "🔌 Protocol",
    "port": "🔢 Port",
}


# ─────────────────────────────────────────────────────────────
# 📝 SECTION 6: YAML Key Upsert
# ─────────────────────────────────────────────────────────────
def format_scalar(value):
    """Bare token for numbers and booleans, double-quoted string otherwise."""
    if isinstance(value, bool):
        return "true" if value else "false"
    text = str(value).strip()
    if NUMBER_RE.fullmatch(text):
        # leading zeros would read back as octal
        return str(int(text))
    escaped = text.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def split_inline_comment(rest):
    """Splits a YAML value into (value, comment); the comment keeps its leading spaces."""
    quote = None
    i = 0
    while i < len(rest):
        ch = rest[i]
        if quote:
            if ch == "\\" and quote == '"':
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ("'", '"') and not rest[:i].strip():
            quote = ch
        elif ch == "#" and (i == 0 or rest[i - 1] in " \t"):
            start = i
            while start > 0 and rest[start - 1] in " \t":
                start -= 1
            return rest[:start], rest[start:]
        i += 1
    return rest, ""


def upsert_yaml_key(text, key, value):
    """Replaces the first `key: ...` line or appends a top-level one."""
    pattern = re.compile(rf"^(?P<indent>[ \t]*){re.escape(key)}[ \t]*:(?P<rest>.*)$")
    scalar = format_scalar(value)
    lines = text.splitlines(keepends=True)
    for idx, line in enumerate(lines):
        body = line.rstrip("\r\n")
        m = pattern.match(body)
        if not m:
            continue
        _, comment = split_inline_comment(m.group("rest").lstrip(" \t"))
        if comment and not comment[0].isspace():
            comment = " " + comment
        lines[idx] = f"{m.group('indent')}{key}: {scalar}{comment}{line[len(body):]}"
        return "".join(lines)

    if text and not text.endswith("\n"):
        text += "\n"
    return f"{text}{key}: {scalar}\n"


def read_yaml_values(path):
    if not os.path.isfile(path):
        return {}
    with open(path, "r") as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ManagerError(f"Error parsing {path}: {e}") from e
    return data if isinstance(data, dict) else {}


def update_yaml_file(path, updates):
    if not os.path.isfile(path):
        raise ManagerError(f"Config file not found: {path}")
    with open(path, "r") as f:
        original = f.read()

    text = original
    for key, value in updates.items():
        text = upsert_yaml_key(text, key, value)

    try:
        yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ManagerError(f"Refusing to write {path}: the result is not valid YAML ({e})") from e

    if text != original:
        write_file(path, text)
        log.info("updated %s: %s", path, ", ".join(f"{k}={v}" for k, v in updates.items()))
    return text


# ─────────────────────────────────────────────────────────────
# 🌱 SECTION 7: Environment File
# ─────────────────────────────────────────────────────────────
def read_env_value(path, name):
    if not os.path.isfile(path):
        return None
    value = None
    with open(path, "r") as f:
        for line in f:
            if line.startswith(f"{name}="):
                value = line.rstrip("\r\n").split("=", 1)[1]
    return value


def render_env(settings, port):
    template = os.path.join(settings["repo_dir"], "templates", "bifrost.env.template")
    if os.path.isfile(template):
        with open(template, "r") as f:
            return f.read().replace("{{PORT}}", str(port))
    return f"BIFROST_PORT={port}\nBIFROST_CONFIG_DIR={settings['install_dir']}/configs\n"


def write_env(settings, port):
    make_dirs(settings["env_dir"])
    write_file(settings["env_file"], render_env(settings, port), mode=0o640)
    run_cmd(["chown", f"root:{settings['app_user']}", settings["env_file"]])


def write_env_interactive(settings):
    current = read_env_value(settings["env_file"], "BIFROST_PORT") or settings["default_port"]
    console.print("\n[bold]Settings:[/bold]")
    port = ask_value("🔢 Port", current, validate_port)
    write_env(settings, port)
    console.print(f"[green]✔ Wrote {settings['env_file']}[/green]")
    return port


# ─────────────────────────────────────────────────────────────
# 🧩 SECTION 8: systemd Unit
# ─────────────────────────────────────────────────────────────
def build_unit_file(settings):
    install_dir = settings["install_dir"]
    user = settings["app_user"]
    return f"""[Unit]
Description=Bifrost Service
After=network.target

[Service]
Type=simple
User={user}
Group={user}
WorkingDirectory={install_dir}
EnvironmentFile={settings['env_file']}
ExecStart={binary_path(settings)} {settings['config_file']}
Restart=on-failure
RestartSec=2

[Install]
WantedBy=multi-user.target
"""


def install_unit(settings):
    shipped = os.path.join(settings["repo_dir"], "systemd", "bifrost.service")
    if os.path.isfile(shipped):
        copy_file(shipped, settings["service_file"], 0o644)
    else:
        write_file(settings["service_file"], build_unit_file(settings), mode=0o644)


# ─────────────────────────────────────────────────────────────
# 🚀 SECTION 9: Install / Update
# ─────────────────────────────────────────────────────────────
def install_or_update(settings):
    require_root()
    repo_dir = settings["repo_dir"]
    install_dir = settings["install_dir"]
    user = settings["app_user"]

    console.print("[bold blue]==> Syncing repo...[/bold blue]")
    sync_repo(settings)

    console.print("[bold blue]==> Ensuring user...[/bold blue]")
    ensure_user(settings)

    console.print("[bold blue]==> Installing files...[/bold blue]")
    binary_src = os.path.join(repo_dir, "bifrost")
    if not os.path.isfile(binary_src) and not cli_flags["dry_run"]:
        raise ManagerError(f"Binary not found: {binary_src}")
    make_dirs(install_dir)
    copy_file(binary_src, binary_path(settings), 0o755)

    configs_dst = os.path.join(install_dir, "configs")
    remove_path(configs_dst)
    configs_src = os.path.join(repo_dir, "configs")
    if os.path.isdir(configs_src):
        copy_tree(configs_src, configs_dst)
    else:
        make_dirs(configs_dst)
    run_cmd(["chown", "-R", f"{user}:{user}", install_dir])

    console.print("[bold blue]==> Writing env...[/bold blue]")
    port = write_env_interactive(settings)
    others = [(pid, name) for pid, name in port_listeners(int(port)) if name != "bifrost"]
    for pid, name in others:
        console.print(f"[yellow]⚠️ Port {port} is already used by {name} (pid {pid}).[/yellow]")

    console.print("[bold blue]==> Installing systemd service...[/bold blue]")
    install_unit(settings)
    run_cmd(["systemctl", "daemon-reload"])
    run_cmd(["systemctl", "enable", "--now", settings["service_name"]])
    log.info("installed %s into %s", settings["service_name"], install_dir)

    console.print("\n[bold green]✅ Done. Status:[/bold green]")
    print_status(settings)


# ─────────────────────────────────────────────────────────────
# 🔧 SECTION 10: Configuration Editing
# ─────────────────────────────────────────────────────────────
def ask_value(label, default=None, validator=None):
    kwargs = {"default": str(default)} if default not in (None, "") else {}
    while True:
        answer = (Prompt.ask(f"[bold]{label}[/bold]", **kwargs) or "").strip()
        error = validator(answer) if validator else None
        if error is None:
            return answer
        console.print(f"[red]✘ {error}[/red]")


def require_config(settings):
    path = settings["config_file"]
    if not os.path.isfile(path):
        raise ManagerError(f"Config file not found: {path}\nRun Install / Update first.")
    return path


def configure_interactive(settings):
    path = require_config(settings)
    current = read_yaml_values(path)
    public_ip = None
    if current.get("src_ip") in (None, ""):
        public_ip = detect_public_ip()

    console.print(Panel.fit(f"🔧 [bold]Editing {path}[/bold]\nPress Enter to keep the value in brackets.", style="bold cyan"))
    updates = {}
    for key, validator in EDITABLE_KEYS.items():
        default = current.get(key)
        if default in (None, ""):
            default = {"listen_ip": "0.0.0.0", "src_ip": public_ip}.get(key)
        updates[key] = ask_value(FIELD_LABELS[key], default, validator)

    update_yaml_file(path, updates)
    console.print(f"[green]✔ Saved {path}[/green]")
    offer_restart(settings)
    return updates


def parse_pairs(pairs):
    updates = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        key = key.strip()
        if not sep:
            raise ManagerError(f"Expected KEY=VALUE, got {pair!r}")
        if key not in EDITABLE_KEYS:
            raise ManagerError(f"Unknown key {key!r}; editable keys: {', '.join(EDITABLE_KEYS)}")
        value = value.strip()
        error = EDITABLE_KEYS[key](value)
        if error:
            raise ManagerError(f"{key}: {error}")
        updates[key] = value
    return updates


def set_config_values(settings, pairs):
    path = require_config(settings)
    updates = parse_pairs(pairs)
    update_yaml_file(path, updates)
    for key, value in updates.items():
        console.print(f"[green]✔ {key} = {value}[/green]")
    return updates


def show_config(settings):
    path = settings["config_file"]
    values = read_yaml_values(path)
    table = Table(title=path, show_header=True, header_style="bold blue")
    table.add_column("Key")
    table.add_column("Value")
    for key in EDITABLE_KEYS:
        value = values.get(key)
        table.add_row(key, "[dim]-[/dim]" if value is None else escape(str(value)))
    console.print(table)


def change_port(settings):
    require_root()
    write_env_interactive(settings)
    offer_restart(settings)


def offer_restart(settings):
    if service_status_short(settings) != "running":
        return
    if Confirm.ask("🔄 Restart the service to apply changes?", default=True):
        restart_service(settings)


# ─────────────────────────────────────────────────────────────
# ▶️ SECTION 11: Service Control
# ─────────────────────────────────────────────────────────────
def print_status(settings):
    run_cmd(["systemctl", "--no-pager", "status", settings["service_name"]], check=False, capture=False, readonly=True)


def systemctl_action(settings, verb):
    require_root()
    run_cmd(["systemctl", verb, settings["service_name"]])
    log.info("systemctl %s %s", verb, settings["service_name"])
    print_status(settings)


def start_service(settings):
    systemctl_action(settings, "start")


def stop_service(settings):
    systemctl_action(settings, "stop")


def restart_service(settings):
    systemctl_action(settings, "restart")


def show_status(settings):
    print_status(settings)
    info = service_process_info(settings)
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Check")
    table.add_column("Result")
    running = service_status_short(settings) == "running"
    table.add_row("Service", "✅ running" if running else "❌ stopped")
    table.add_row("Version", escape(current_version(settings)))
    if info:
        table.add_row("PID", str(info["pid"]))
        table.add_row("Memory", f"{info['rss_mb']} MB")
        table.add_row("CPU", f"{info['cpu_percent']}%")
        table.add_row("Uptime", info["uptime"])
    console.print(table)


def show_logs(settings, follow=True, lines=None):
    args = ["journalctl", "-u", settings["service_name"]]
    if lines is not None:
        args += ["-n", str(lines)]
    if follow:
        console.print("[yellow]Press Ctrl+C to leave the logs.[/yellow]")
        args.append("-f")
    else:
        args.append("--no-pager")
    try:
        run_cmd(args, check=False, capture=False, readonly=True)
    except KeyboardInterrupt:
        console.print()


# ─────────────────────────────────────────────────────────────
# 🧼 SECTION 12: Uninstall
# ─────────────────────────────────────────────────────────────
def uninstall_all(settings, assume_yes=False, remove_user=None):
    require_root()
    service = settings["service_name"]
    targets = [settings["service_file"], settings["install_dir"], settings["env_dir"], settings["repo_dir"]]
    console.print(Panel.fit("\n".join(f" - {t}" for t in targets), title="🧼 This removes the service and its files", style="bold red"))
    if not assume_yes and not Confirm.ask("Continue?", default=False):
        console.print("[yellow]Cancelled.[/yellow]")
        return False

    run_cmd(["systemctl", "stop", service], check=False)
    run_cmd(["systemctl", "disable", service], check=False)
    remove_path(settings["service_file"])
    run_cmd(["systemctl", "daemon-reload"], check=False)
    run_cmd(["systemctl", "reset-failed"], check=False)
    for path in targets[1:]:
        remove_path(path)

    user = settings["app_user"]
    if remove_user is None:
        remove_user = False if assume_yes else Confirm.ask(f"Also delete user {user}?", default=False)
    if remove_user and user_exists(user):
        run_cmd(["userdel", user], check=False)

    log.info("uninstalled %s", service)
    console.print("[bold green]✅ Uninstall complete.[/bold green]")
    return True


# ─────────────────────────────────────────────────────────────
# 📋 SECTION 13: Menu
# ─────────────────────────────────────────────────────────────
MENU_ITEMS = [
    ("1", "Install / Update", install_or_update),
    ("2", "Configure tunnel (YAML)", configure_interactive),
    ("3", "Change port (env)", change_port),
    ("4", "Start", start_service),
    ("5", "Stop", stop_service),
    ("6", "Restart", restart_service),
    ("7", "Show Status", show_status),
    ("8", "Show Logs", show_logs),
    ("9", "Show Config", show_config),
    ("10", "Uninstall", uninstall_all),
]


def pause():
    Prompt.ask("\n[dim]Press Enter to continue[/dim]", default="", show_default=False)


def show_header(settings):
    status = service_status_short(settings)
    color = "green" if status == "running" else "red"
    console.print(Panel.fit(
        f"Repo:    {settings['repo']} ({settings['branch']})\n"
        f"Status:  [{color}]{status}[/{color}]\n"
        f"Version: {escape(current_version(settings))}",
        title="🌈 [bold cyan]Bifrost Manager[/bold cyan]",
        style="bold magenta",
    ))


def menu(settings):
    actions = {key: action for key, _, action in MENU_ITEMS}
    while True:
        console.clear()
        show_header(settings)
        for key, label, _ in MENU_ITEMS:
            console.print(f"{key:>2}) {label}")
        console.print(" 0) Exit")
        choice = Prompt.ask("[bold green]Choose[/bold green]").strip()
        if choice == "0":
            return 0
        action = actions.get(choice)
        if action is None:
            console.print("[red]Invalid option[/red]")
            pause()
            continue
        try:
            action(settings)
        except ManagerError as e:
            log.error("%s failed: %s", action.__name__, e)
            console.print(Panel.fit(escape(str(e)), title="Error", style="bold red"))
        if action is not show_logs:
            pause()


# ─────────────────────────────────────────────────────────────
# 🧾 SECTION 14: CLI + Crash Handler
# ─────────────────────────────────────────────────────────────
def build_parser():
    parser = argparse.ArgumentParser(prog="bifrost-manager", description="Bifrost service installer and manager")
    parser.add_argument("--dry-run", action="store_true", help="Show system changes instead of making them")
    parser.add_argument("--settings", help=f"Manager settings file (default {SETTINGS_PATH})")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("menu", help="Interactive menu (default)")
    sub.add_parser("bootstrap", help="Sync the installer repo, then open the menu")
    sub.add_parser("install", help="Install or update the binary, env file and service")
    sub.add_parser("configure", help="Edit tunnel keys in the YAML config interactively")
    p = sub.add_parser("set", help="Set YAML config keys without prompting")
    p.add_argument("pairs", nargs="+", metavar="KEY=VALUE")
    sub.add_parser("show-config", help="Print the editable YAML keys")
    sub.add_parser("start", help="Start the service")
    sub.add_parser("stop", help="Stop the service")
    sub.add_parser("restart", help="Restart the service")
    sub.add_parser("status", help="Show service status")
    p = sub.add_parser("logs", help="Show service logs")
    p.add_argument("--no-follow", action="store_true", help="Print and exit instead of following")
    p.add_argument("-n", "--lines", type=int, help="Number of recent lines")
    p = sub.add_parser("uninstall", help="Remove the service and all installed files")
    p.add_argument("--yes", action="store_true", help="Do not ask for confirmation")
    p.add_argument("--remove-user", action="store_true", help="Also delete the service user")
    sub.add_parser("version", help="Print the installed binary version")
    return parser


def run(cli):
    settings = load_settings(cli.settings)
    setup_logging(settings["log_file"])
    command = cli.command or "menu"
    log.debug("command %s (dry_run=%s)", command, cli_flags["dry_run"])

    if command == "menu":
        return menu(settings)
    if command == "bootstrap":
        require_root()
        sync_repo(settings)
        return menu(settings)
    if command == "set":
        set_config_values(settings, cli.pairs)
    elif command == "logs":
        show_logs(settings, follow=not cli.no_follow, lines=cli.lines)
    elif command == "uninstall":
        uninstall_all(settings, assume_yes=cli.yes, remove_user=True if cli.remove_user else None)
    elif command == "version":
        console.print(current_version(settings))
    else:
        simple = {
            "install": install_or_update,
            "configure": configure_interactive,
            "show-config": show_config,
            "start": start_service,
            "stop": stop_service,
            "restart": restart_service,
            "status": show_status,
        }
        simple[command](settings)
    return 0


def write_crash_log():
    details = traceback.format_exc()
    log.critical("unhandled error\n%s", details)
    try:
        with open(CRASH_LOG, "w") as f:
            f.write("💥 Bifrost Manager crashed:\n")
            f.write(details)
        where = CRASH_LOG
    except OSError:
        sys.stderr.write(details)
        where = "stderr"
    console.print("\n[bold red]💥 Bifrost Manager encountered a fatal error[/bold red]")
    console.print(f"📝 Crash details written to [yellow]{where}[/yellow]")


def main(argv=None):
    cli = build_parser().parse_args(argv)
    cli_flags["dry_run"] = cli.dry_run
    try:
        return run(cli)
    except KeyboardInterrupt:
        console.print("\nCancelled.")
        return 130
    except ManagerError as e:
        log.error("%s", e)
        console.print(f"[bold red]✘ {escape(str(e))}[/bold red]")
        return 1
    except Exception:
        write_crash_log()
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
