#!/usr/bin/env python3
"""Base proxy service and daemon controller shared by the proxy entry points."""
import logging
import sys
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

import httpx
from fastapi import FastAPI

from ..config.config_manager import ConfigManager, ProxySettings
from ..utils.platform_helper import create_detached_process, is_process_running, kill_process

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent


class BaseProxyService(ABC):
    """Base proxy service implementation."""

    def __init__(
        self,
        service_name: str,
        settings: ProxySettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialise the proxy service.

        Args:
            service_name: Service identifier, also used as the logger name prefix
            settings: Resolved proxy settings
            transport: Optional httpx transport (used to stub the upstream)
        """
        self.service_name = service_name
        self.settings = settings
        self.logger = self._configure_logger()

        # Create async HTTP client
        self.client = self._create_async_client(transport)

        # FastAPI application wiring
        self.app = FastAPI(lifespan=self._lifespan)
        self._setup_routes()

    def _configure_logger(self) -> logging.Logger:
        """Configure a dedicated logger, adding a file handler only once.

        The ``uaproxy`` package logger shares the handler so session and
        stream diagnostics land in the same file.
        """
        logger = logging.getLogger(f'{self.service_name}_proxy')
        logger.setLevel(logging.INFO)

        log_file = self.settings.log_file
        if log_file and not logger.handlers:
            log_file = Path(log_file)
            log_file.parent.mkdir(parents=True, exist_ok=True)

            file_handler = logging.FileHandler(log_file, encoding='utf-8')
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            file_handler.setFormatter(formatter)
            for target in (logger, logging.getLogger('uaproxy')):
                target.setLevel(logging.INFO)
                target.addHandler(file_handler)
                target.propagate = False
        return logger

    def _create_async_client(self, transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
        """Create and configure an httpx AsyncClient."""
        timeout = httpx.Timeout(  # Allow long-running streaming responses
            timeout=None,
            connect=30.0,
            read=None,
            write=30.0,
            pool=None,
        )
        limits = httpx.Limits(
            max_connections=200,
            max_keepalive_connections=100,
        )
        kwargs = {}
        if transport is not None:
            kwargs['transport'] = transport
        elif self.settings.proxy_url:
            kwargs['proxy'] = self.settings.proxy_url
        return httpx.AsyncClient(
            timeout=timeout,
            limits=limits,
            headers={"Connection": "keep-alive"},
            **kwargs,
        )

    @asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        """Dispose the HTTP client when the application shuts down."""
        try:
            yield
        finally:
            await self.client.aclose()

    @abstractmethod
    def _setup_routes(self):
        """Register the FastAPI routes."""

    def run_app(self, host: Optional[str] = None, port: Optional[int] = None):
        """Serve the application in the foreground."""
        import uvicorn

        uvicorn.run(
            self.app,
            host=host or self.settings.host,
            port=port or self.settings.port,
            log_level='info',
            timeout_keep_alive=60,
            http='h11',
        )


class BaseServiceController:
    """Controller helper used by CLI commands to manage a detached proxy."""

    def __init__(self, service_name: str, config_manager: ConfigManager, proxy_module_path: str):
        """
        Initialise the service controller.

        Args:
            service_name: Service identifier
            config_manager: Configuration manager instance
            proxy_module_path: Python module path to the ASGI app (e.g. 'uaproxy.unlimited.app')
        """
        self.service_name = service_name
        self.config_manager = config_manager
        self.proxy_module_path = proxy_module_path
        self.pid_file = config_manager.pid_file
        self.log_file = config_manager.log_file

    def get_pid(self) -> Optional[int]:
        """Return the PID of the managed service if available."""
        if self.pid_file.exists():
            try:
                return int(self.pid_file.read_text().strip())
            except (OSError, ValueError):
                return None
        return None

    def is_running(self) -> bool:
        """Check whether the managed service is running."""
        return is_process_running(self.get_pid())

    def start(self) -> bool:
        """Start the managed service."""
        if self.is_running():
            print(f"{self.service_name} service is already running")
            return False

        self.config_manager.ensure_config_file()
        self.config_manager.ensure_run_dir()
        settings = self.config_manager.settings

        uvicorn_cmd = [
            sys.executable, '-m', 'uvicorn',
            f'{self.proxy_module_path}:app',
            '--host', settings.host,
            '--port', str(settings.port),
            '--http', 'h11',
            '--timeout-keep-alive', '60',
            '--limit-concurrency', '500',
        ]
        with open(self.log_file, 'a') as log_handle:
            # Launch in a detached process group so console signals do not terminate it
            process = create_detached_process(
                uvicorn_cmd,
                log_handle,
                cwd=str(PROJECT_ROOT),
            )

        self.pid_file.write_text(str(process.pid))

        # Allow the process time to boot
        time.sleep(1)

        if self.is_running():
            print(f"{self.service_name} service started (port: {settings.port})")
            return True
        print(f"Failed to start {self.service_name} service, see {self.log_file}")
        return False

    def stop(self) -> bool:
        """Stop the managed service."""
        if not self.is_running():
            print(f"{self.service_name} service is not running")
            return False

        kill_process(self.get_pid())
        if self.pid_file.exists():
            self.pid_file.unlink()

        print(f"{self.service_name} service stopped")
        return True

    def restart(self) -> bool:
        """Restart the managed service."""
        self.stop()
        time.sleep(1)
        return self.start()

    def status(self):
        """Print the service status to stdout."""
        if self.is_running():
            settings = self.config_manager.settings
            print(f"{self.service_name} service: running (PID: {self.get_pid()}, port: {settings.port})")
        else:
            print(f"{self.service_name} service: stopped")
