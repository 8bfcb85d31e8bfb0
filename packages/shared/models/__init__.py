from .domain import *  # noqa: F401,F403
from .enums import *  # noqa: F401,F403
