"""Operations and monitoring core for the Lion Football Academy platform.

Exports for testing and module access.
"""

# Make lib and models accessible
from ops_monitor import lib, models

__all__ = ['lib', 'models']
