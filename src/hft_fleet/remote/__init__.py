from hft_fleet.remote.control import AgentControlClient, EndpointCheck
from hft_fleet.remote.crypto import decrypt_secret, encrypt_secret
from hft_fleet.remote.executor import RemoteExecutor
from hft_fleet.remote.ssh import AsyncSshExecutor, SshExecutor
from hft_fleet.remote.types import RemoteResult

__all__ = [
    "AgentControlClient",
    "EndpointCheck",
    "decrypt_secret",
    "encrypt_secret",
    "RemoteExecutor",
    "AsyncSshExecutor",
    "SshExecutor",
    "RemoteResult",
]
