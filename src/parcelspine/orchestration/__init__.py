"""
parcelspine.orchestration - runtime context, parcels and the reroute driver.
"""

from parcelspine.orchestration.parcels import ANCHOR_PROP, ParcelHandle, mount_parcel
from parcelspine.orchestration.reroute import RerouteResult, create_application, reroute
from parcelspine.orchestration.runtime import LifecycleRuntime

__all__ = [
    "ANCHOR_PROP",
    "LifecycleRuntime",
    "ParcelHandle",
    "RerouteResult",
    "create_application",
    "mount_parcel",
    "reroute",
]
