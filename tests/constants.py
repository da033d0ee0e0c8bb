from datetime import datetime, timezone

from services.rate_cache import CacheTier

NOW = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)

TEST_TTLS = {CacheTier.RECENT: 300, CacheTier.HISTORICAL: 3600, CacheTier.SNAPSHOT: 60, CacheTier.STATISTICS: 30}
