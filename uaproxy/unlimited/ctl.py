#!/usr/bin/env python3
"""Controller for the background UnlimitedAI proxy process."""
from ..config.config_manager import config_manager
from ..core.base_proxy import BaseServiceController


class UnlimitedController(BaseServiceController):
    """Controller wrapper for the UnlimitedAI proxy service."""
    def __init__(self, manager=config_manager):
        super().__init__(
            service_name='unlimited',
            config_manager=manager,
            proxy_module_path='uaproxy.unlimited.app',
        )


controller = UnlimitedController()


def get_pid():
    return controller.get_pid()

def is_running():
    return controller.is_running()

def start():
    return controller.start()

def stop():
    return controller.stop()

def restart():
    return controller.restart()

def status():
    controller.status()
