"""Process runtime: real and simulated backends, child processes, listeners.

Import backends from their modules (``refork.runtime.fork``,
``refork.runtime.memory``); this package only re-exports the
application-facing helper.
"""

from refork.runtime.children import no_longer_fork_safe

__all__ = ["no_longer_fork_safe"]
