"""Main orchestrator for torrentcast - progressive streaming from BitTorrent swarms."""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import Any

import tomllib
from platformdirs import user_cache_dir
from pydantic_settings import BaseSettings
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .errors import TorrentCastError
from .subtitles import ProbeCache, SubtitleExtractor, SubtitleProber
from .torrent import LibtorrentEngine, SessionRegistry, StreamingScheduler, SwarmEngine

logger = logging.getLogger(__name__)


CONFIG_SEARCH_PATHS = [
    Path.cwd() / "config.toml",
    Path.cwd() / "torrentcast.toml",
    Path.home() / ".config" / "torrentcast" / "config.toml",
]

MiB = 1024 * 1024


def load_config_file(path: Path | None = None) -> dict[str, Any]:
    """Load configuration from a TOML file."""
    if path:
        paths_to_try = [path]
    else:
        paths_to_try = CONFIG_SEARCH_PATHS

    for config_path in paths_to_try:
        if config_path.exists():
            with open(config_path, "rb") as f:
                data = tomllib.load(f)
            logger.info(f"Loaded config from {config_path}")
            return data

    return {}


class Config(BaseSettings):
    """Application configuration.

    Configuration is loaded from (in order of priority, highest first):
    1. CLI arguments
    2. Environment variables (prefixed with TORRENTCAST_)
    3. TOML config file (config.toml, torrentcast.toml, or ~/.config/torrentcast/config.toml)
    4. Default values
    """

    model_config = {"env_prefix": "TORRENTCAST_"}

    # Paths
    download_dir: Path = Path(user_cache_dir("torrentcast", "torrentcast")) / "downloads"

    # HTTP server
    host: str = "127.0.0.1"
    port: int = 3001

    # Swarm engine
    listen_interfaces: str = "0.0.0.0:6881"

    # Streaming
    lookahead_bytes: int = 8 * MiB
    seek_threshold_bytes: int = 0  # 0 = same as lookahead
    chunk_size: int = 64 * 1024
    poll_interval: float = 0.1

    # Timeouts (seconds)
    join_timeout: float = 30.0
    stall_timeout: float = 30.0
    probe_timeout: float = 20.0

    # Subtitles
    probe_prefix_bytes: int = 10 * MiB
    cache_ttl: float = 24 * 60 * 60
    ffprobe_path: str = "ffprobe"
    ffmpeg_path: str = "ffmpeg"

    # General
    log_level: str = "INFO"


class TorrentCast:
    """
    Wires the streaming core together.

    Coordinates:
    - Swarm engine and session registry
    - Streaming scheduler for range delivery
    - Subtitle probing (cached) and extraction
    """

    def __init__(self, config: Config | None = None, engine: SwarmEngine | None = None):
        self.config = config or Config()
        self.engine = engine or LibtorrentEngine(listen_interfaces=self.config.listen_interfaces)

        self.scheduler = StreamingScheduler(
            self.engine,
            lookahead_bytes=self.config.lookahead_bytes,
            stall_timeout=self.config.stall_timeout,
            poll_interval=self.config.poll_interval,
            seek_threshold_bytes=self.config.seek_threshold_bytes or None,
        )
        self.probe_cache = ProbeCache(ttl=self.config.cache_ttl)
        self.registry = SessionRegistry(
            self.engine,
            download_dir=self.config.download_dir,
            join_timeout=self.config.join_timeout,
            scheduler=self.scheduler,
            probe_cache=self.probe_cache,
        )
        self.prober = SubtitleProber(
            self.scheduler,
            self.probe_cache,
            ffprobe_path=self.config.ffprobe_path,
            prefix_bytes=self.config.probe_prefix_bytes,
            timeout=self.config.probe_timeout,
        )
        self.extractor = SubtitleExtractor(
            ffmpeg_path=self.config.ffmpeg_path,
            chunk_size=self.config.chunk_size,
        )

    async def start(self) -> None:
        self.config.download_dir.mkdir(parents=True, exist_ok=True)
        await self.engine.start()
        logger.info(f"Using swarm engine: {self.engine.name}")

    async def cleanup(self) -> None:
        """Tear down every session and the swarm engine."""
        await self.registry.shutdown()
        await self.engine.shutdown()


def setup_logging(level: str = "INFO") -> None:
    """Set up logging with rich handler."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True)],
    )


def build_config(args: argparse.Namespace) -> Config:
    """Build config from TOML file, env vars, and CLI args."""
    config_path = Path(args.config) if hasattr(args, 'config') and args.config else None
    file_config = load_config_file(config_path)

    cli_overrides = {}
    if hasattr(args, 'download_dir') and args.download_dir:
        cli_overrides["download_dir"] = Path(args.download_dir)
    if hasattr(args, 'log_level') and args.log_level:
        cli_overrides["log_level"] = args.log_level
    if hasattr(args, 'host') and args.host:
        cli_overrides["host"] = args.host
    if hasattr(args, 'port') and args.port:
        cli_overrides["port"] = args.port

    # Init kwargs outrank the environment in pydantic-settings, so file values
    # that TORRENTCAST_* variables also set are dropped here
    env_names = {name.upper() for name in os.environ}
    prefix = Config.model_config["env_prefix"]
    file_config = {
        key: value
        for key, value in file_config.items()
        if f"{prefix}{key}".upper() not in env_names
    }

    merged = {**file_config, **cli_overrides}
    return Config(**merged)


def run_serve(args: argparse.Namespace) -> int:
    """Start the HTTP streaming server."""
    config = build_config(args)
    setup_logging(config.log_level)

    from .web import run_server

    console = Console()
    console.print(f"\n[bold]Starting torrentcast[/bold]")
    console.print(f"Listening on [cyan]http://{config.host}:{config.port}[/cyan]")
    console.print(f"Health check: [cyan]http://{config.host}:{config.port}/health[/cyan]\n")
    run_server(config)
    return 0


async def run_info(args: argparse.Namespace) -> int:
    """Join a swarm and print the torrent's file list."""
    config = build_config(args)
    setup_logging(config.log_level)
    console = Console()

    torrentcast = TorrentCast(config)
    try:
        await torrentcast.start()
        session = await torrentcast.registry.add(args.locator)

        table = Table(title=session.name)
        table.add_column("Index", style="cyan")
        table.add_column("Name", style="white")
        table.add_column("Size", style="yellow")
        table.add_column("Kind", style="green")
        for f in session.files:
            table.add_row(str(f.index), f.path, f"{f.size / MiB:.1f} MiB", f.kind.value)

        console.print(table)
        console.print(f"Info hash: [cyan]{session.info_hash}[/cyan]")
        return 0

    except TorrentCastError as e:
        console.print(f"[red]Failed: {e}[/red]")
        return 1

    finally:
        await torrentcast.cleanup()


EXAMPLE_CONFIG = '''\
# torrentcast configuration
# Save as: config.toml, torrentcast.toml, or ~/.config/torrentcast/config.toml

# Paths
# download_dir = "./downloads"

# HTTP server
host = "127.0.0.1"
port = 3001

# Swarm engine (libtorrent listen address)
listen_interfaces = "0.0.0.0:6881"

# Streaming
# Bytes prioritized ahead of each reader
lookahead_bytes = 8388608
# Jumps larger than this are treated as seeks (0 = lookahead_bytes)
seek_threshold_bytes = 0
chunk_size = 65536

# Timeouts in seconds
join_timeout = 30.0
stall_timeout = 30.0
probe_timeout = 20.0

# Subtitles
probe_prefix_bytes = 10485760
cache_ttl = 86400
ffprobe_path = "ffprobe"
ffmpeg_path = "ffmpeg"

# General
log_level = "INFO"
'''


def run_setup(args: argparse.Namespace) -> int:
    """Create config file."""
    console = Console()

    if args.output:
        output_path = Path(args.output)
    elif args.user:
        output_path = Path.home() / ".config" / "torrentcast" / "config.toml"
    else:
        output_path = Path.cwd() / "config.toml"

    console.print(f"\n[bold]torrentcast setup[/bold]\n")

    if output_path.exists() and not args.force:
        console.print(f"[yellow]Config file already exists: {output_path}[/yellow]")
        console.print("Use --force to overwrite.")
        return 1

    output_path.parent.mkdir(parents=True, exist_ok=True)

    with open(output_path, "w") as f:
        f.write(EXAMPLE_CONFIG)

    console.print(f"[green]Created config file: {output_path}[/green]\n")
    console.print("Edit this file to configure your settings.")
    return 0


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="torrentcast - stream video from BitTorrent swarms while they download",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP streaming server")
    serve_parser.add_argument("--host", "-H", help="Host to bind to")
    serve_parser.add_argument("--port", "-p", type=int, help="Port to bind to")
    serve_parser.add_argument("--download-dir", "-d", help="Download directory")
    serve_parser.add_argument("--config", "-c", help="Config file path")
    serve_parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    # Info command
    info_parser = subparsers.add_parser("info", help="Join a swarm and list the torrent's files")
    info_parser.add_argument("locator", help="Magnet link or info hash")
    info_parser.add_argument("--download-dir", "-d", help="Download directory")
    info_parser.add_argument("--config", "-c", help="Config file path")
    info_parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"])

    # Setup command
    setup_parser = subparsers.add_parser("setup", help="Create a config file")
    setup_parser.add_argument("--output", "-o", help="Output path for config file")
    setup_parser.add_argument("--user", "-u", action="store_true", help="Create in ~/.config/torrentcast/")
    setup_parser.add_argument("--force", "-f", action="store_true", help="Overwrite existing config file")

    args = parser.parse_args()

    if args.command == "serve":
        sys.exit(run_serve(args))
    elif args.command == "info":
        sys.exit(asyncio.run(run_info(args)))
    elif args.command == "setup":
        sys.exit(run_setup(args))
    else:
        parser.print_help()
        sys.exit(0)


if __name__ == "__main__":
    main()
