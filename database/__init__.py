from .exceptions import (
    IndexVerificationError,
    MaintenanceError,
    StateFileError,
    UnsupportedServerVersionError,
    UserAbortError,
)
from .models import (
    CollectionCompactLog,
    CollectionLog,
    CompactDatabaseLog,
    DatabaseLog,
    IndexDescriptor,
    IndexLog,
    OrphanedIndex,
    RebuildState,
    SessionRecord,
)
from .version import OptionFilter, ServerVersionInfo, VersionProbe
