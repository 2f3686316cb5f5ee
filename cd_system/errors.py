"""
Failure kinds of a deployment cycle.

Every error raised by the adapters derives from DeploymentError, so the
supervisor can abort one cycle without taking the process down.
"""


class DeploymentError(Exception):
    """Base class for everything that can abort a deployment cycle"""


class CommandFailed(DeploymentError):
    """An external command could not be started or exited non-zero"""

    def __init__(self, command, returncode=None, output=""):
        self.command = list(command)
        self.returncode = returncode
        self.output = output
        status = "could not be started" if returncode is None else f"exited with status {returncode}"
        super().__init__(f"Command {' '.join(self.command)} {status}\nOutput: {output}")


class VcsFailure(DeploymentError):
    pass


class BuildFailure(DeploymentError):
    pass


class MigrationFailure(DeploymentError):
    """Non-fatal unless migrations are configured as strict"""


class PortExhausted(DeploymentError):
    pass


class SpawnFailure(DeploymentError):
    pass


class ForwarderBindFailure(DeploymentError):
    """The public port could not be bound; fatal only at bootstrap"""
