"""
Clients for the external HTTP services processors talk to.
"""

from renderqueue.clients.automatic1111 import Automatic1111Client
from renderqueue.clients.autotag import AutoTagClient
from renderqueue.clients.civitai import CivitaiClient

__all__ = ["Automatic1111Client", "AutoTagClient", "CivitaiClient"]
