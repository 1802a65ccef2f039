"""
refork - pre-forking WSGI supervisor with mold reforking.

A monitor process keeps a pool of workers forked from a *mold*.  Once a
worker has served enough requests it is promoted: a new mold is forked
from it, and workers are replaced one at a time by children of the warm
mold, so they share its memory pages.

Application code can opt the whole tree out of reforking::

    import refork
    refork.no_longer_fork_safe()
"""

__version__ = "0.1.0"

from refork.core.settings import Config, ReforkSettings, load_config  # noqa: E402
from refork.runtime.children import no_longer_fork_safe  # noqa: E402
from refork.supervision.control import ControlLoop  # noqa: E402

__all__ = [
    "__version__",
    "Config",
    "ReforkSettings",
    "load_config",
    "no_longer_fork_safe",
    "ControlLoop",
]
