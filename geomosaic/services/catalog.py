from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from ..errors import InvalidParameter
from ..models import BoundingBox, TileSpec

GIBS_WMS_URL = "https://gibs.earthdata.nasa.gov/wms/epsg4326/best/wms.cgi"
GIBS_DEFAULT_LAYER = "VIIRS_SNPP_CorrectedReflectance_TrueColor"

NAIP_WMS_URL = "https://services.nationalmap.gov/arcgis/services/USGSNAIPPlus/MapServer/WmsServer"
NAIP_LAYER_NAME = "0"

ELEVATION_EXPORT_URL = (
    "https://elevation.nationalmap.gov/arcgis/rest/services/3DEPElevation/ImageServer/exportImage"
)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
JPEG_SIGNATURE = b"\xff\xd8\xff"
TIFF_SIGNATURES = (b"II*\x00", b"MM\x00*")

FORMAT_SIGNATURES: Dict[str, Tuple[bytes, ...]] = {
    "image/png": (PNG_SIGNATURE,),
    "image/jpeg": (JPEG_SIGNATURE,),
    "image/tiff": TIFF_SIGNATURES,
}


class ServiceKey(str, Enum):
    """Identifiers for the supported remote raster services."""

    ELEVATION = "elevation"
    SATELLITE = "satellite"
    AERIAL = "aerial"


class ServiceProtocol(str, Enum):
    WMS = "wms"
    ARCGIS_EXPORT = "arcgis_export"


@dataclass(frozen=True)
class ServiceConfig:
    """Request limits and wire details of one remote raster service.

    ``native_resolution`` is the finest useful ground distance per pixel in
    metres and ``max_cells_per_request`` the largest width * height the
    service will render in a single response.
    """

    key: ServiceKey
    label: str
    url: str
    protocol: ServiceProtocol
    image_format: str
    extension: str
    native_resolution: float
    max_cells_per_request: int
    layer: str | None = None
    description: str | None = None

    @property
    def signatures(self) -> Tuple[bytes, ...]:
        return FORMAT_SIGNATURES[self.image_format]


SERVICE_CATALOG: Dict[ServiceKey, ServiceConfig] = {
    ServiceKey.ELEVATION: ServiceConfig(
        key=ServiceKey.ELEVATION,
        label="USGS 3DEP elevation",
        url=ELEVATION_EXPORT_URL,
        protocol=ServiceProtocol.ARCGIS_EXPORT,
        image_format="image/tiff",
        extension=".tif",
        native_resolution=10.0,
        max_cells_per_request=4000 * 4000,
        description="Seamless 3DEP digital elevation model as 32-bit float GeoTIFF.",
    ),
    ServiceKey.SATELLITE: ServiceConfig(
        key=ServiceKey.SATELLITE,
        label="NASA GIBS true colour",
        url=GIBS_WMS_URL,
        protocol=ServiceProtocol.WMS,
        image_format="image/png",
        extension=".png",
        native_resolution=250.0,
        max_cells_per_request=4096 * 4096,
        layer=GIBS_DEFAULT_LAYER,
        description="Suomi NPP VIIRS corrected reflectance mosaic with global coverage.",
    ),
    ServiceKey.AERIAL: ServiceConfig(
        key=ServiceKey.AERIAL,
        label="USGS NAIP Plus aerial imagery",
        url=NAIP_WMS_URL,
        protocol=ServiceProtocol.WMS,
        image_format="image/jpeg",
        extension=".jpg",
        native_resolution=1.0,
        max_cells_per_request=4096 * 4096,
        layer=NAIP_LAYER_NAME,
        description="High-resolution orthophotos for the continental United States.",
    ),
}


def get_service(service: str | ServiceKey) -> ServiceConfig:
    try:
        key = ServiceKey(service)
    except ValueError as exc:
        known = ", ".join(key.value for key in ServiceKey)
        raise InvalidParameter(f"Unknown service {service!r}; expected one of: {known}.") from exc
    return SERVICE_CATALOG[key]


def build_request(spec: TileSpec) -> Tuple[str, Dict[str, object]]:
    """Return the endpoint URL and query parameters that render ``spec``."""

    service = get_service(spec.service)
    if service.protocol == ServiceProtocol.WMS:
        return service.url, _wms_params(service, spec)
    return service.url, _arcgis_export_params(service, spec)


def matches_signature(service: ServiceConfig, content: bytes) -> bool:
    return any(content.startswith(signature) for signature in service.signatures)


def _wms_params(service: ServiceConfig, spec: TileSpec) -> Dict[str, object]:
    return {
        "SERVICE": "WMS",
        "REQUEST": "GetMap",
        "VERSION": "1.3.0",
        "FORMAT": service.image_format,
        "STYLES": "",
        "LAYERS": service.layer or "",
        "WIDTH": spec.width,
        "HEIGHT": spec.height,
        "CRS": spec.bbox.crs,
        "BBOX": _wms_bbox(spec.bbox),
    }


def _wms_bbox(bbox: BoundingBox) -> str:
    # WMS 1.3.0 uses latitude/longitude axis order for EPSG:4326.
    if bbox.crs.upper() == "EPSG:4326":
        ordered = (bbox.min_y, bbox.min_x, bbox.max_y, bbox.max_x)
    else:
        ordered = bbox.as_tuple()
    return ",".join(f"{value:.6f}" for value in ordered)


def _arcgis_export_params(service: ServiceConfig, spec: TileSpec) -> Dict[str, object]:
    spatial_reference = spec.bbox.crs.split(":")[-1]
    return {
        "bbox": ",".join(f"{value:.6f}" for value in spec.bbox.as_tuple()),
        "bboxSR": spatial_reference,
        "imageSR": spatial_reference,
        "size": f"{spec.width},{spec.height}",
        "format": "tiff",
        "pixelType": "F32",
        "noDataInterpretation": "esriNoDataMatchAny",
        "interpolation": "RSP_BilinearInterpolation",
        "f": "image",
    }
