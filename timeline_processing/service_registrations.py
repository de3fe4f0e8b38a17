# Copyright 2024 The Fuchsia Authors. All rights reserved.
# Use of this source code is governed by a BSD-style license that can be
# found in the LICENSE file.
"""Names of the services used to query a running engine for data that is not
in the trace.
"""

import dataclasses
from typing import Any, Optional


@dataclasses.dataclass(frozen=True)
class RegisteredServiceDescription:
    """A service registered with the engine's VM service.

    Args:
        service: The name the service is invoked by.
        title: A human readable title.
        icon: Optional icon to show next to the title.
    """

    service: str
    title: str
    icon: Optional[Any] = None


# Memory service registered by the engine's tooling. Reports the memory
# info of the device through its platform tools.
FLUTTER_MEMORY = RegisteredServiceDescription(
    service="flutterMemoryInfo",
    title="Flutter Memory Info",
)

FLUTTER_LIST_VIEWS: str = "_flutter.listViews"

# Estimate of how many bytes the layer and picture raster cache entries use.
FLUTTER_ENGINE_RASTER_CACHE: str = "_flutter.estimateRasterCacheMemory"
