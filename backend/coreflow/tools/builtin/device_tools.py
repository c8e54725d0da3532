from __future__ import annotations

import re
from typing import Any, Dict, List, Literal, Optional, Protocol

from pydantic import Field

from coreflow.risk import RiskLevel
from coreflow.tools.base import (
    BaseTool,
    ProgressCallback,
    ToolExecutionError,
    ToolInput,
    ToolResult,
)


class DeviceBridge(Protocol):
    async def battery_status(self) -> Dict[str, Any]: ...

    async def storage_status(self) -> Dict[str, Any]: ...

    async def capture_photo(self, camera: str) -> str: ...

    async def recognize_text(self, image_path: str) -> str: ...

    async def current_location(self, precision: str) -> Dict[str, Any]: ...

    async def list_notifications(self, limit: int) -> List[Dict[str, Any]]: ...


class StaticDeviceBridge:
    """Serves a fixed device snapshot. Used for local development and tests."""

    def __init__(self, snapshot: Optional[Dict[str, Any]] = None) -> None:
        self.snapshot: Dict[str, Any] = {
            "battery": {"level": 82, "charging": False},
            "storage": {"free_gb": 41.5, "total_gb": 128.0},
            "photo_path": "/sdcard/DCIM/capture_0001.jpg",
            "ocr_text": {},
            "location": {"lat": 52.52, "lon": 13.405, "accuracy_m": 35.0, "label": "Berlin"},
            "notifications": [],
        }
        self.snapshot.update(snapshot or {})
        self.captured: List[str] = []

    async def battery_status(self) -> Dict[str, Any]:
        return dict(self.snapshot["battery"])

    async def storage_status(self) -> Dict[str, Any]:
        return dict(self.snapshot["storage"])

    async def capture_photo(self, camera: str) -> str:
        path = self.snapshot["photo_path"]
        self.captured.append(path)
        return path

    async def recognize_text(self, image_path: str) -> str:
        return self.snapshot["ocr_text"].get(image_path, "")

    async def current_location(self, precision: str) -> Dict[str, Any]:
        loc = dict(self.snapshot["location"])
        if precision == "coarse":
            loc["lat"] = round(loc["lat"], 2)
            loc["lon"] = round(loc["lon"], 2)
        return loc

    async def list_notifications(self, limit: int) -> List[Dict[str, Any]]:
        return list(self.snapshot["notifications"])[:limit]


class DeviceStatusInput(ToolInput):
    include: List[Literal["battery", "storage"]] = Field(default_factory=lambda: ["battery"])


class DeviceStatusTool(BaseTool[DeviceStatusInput]):
    name = "device_status"
    description = "Reads battery and storage status."
    domain = "device_info"
    required_permissions = ("battery_stats",)
    risk_level = RiskLevel.LOW
    input_model = DeviceStatusInput
    capabilities = ("device.status",)
    keywords = ("battery", "charge", "charging", "storage", "device")
    estimated_duration_ms = 1000

    def __init__(self, bridge: DeviceBridge) -> None:
        self.bridge = bridge

    def extract_params(self, request: str, context: Dict[str, Any]) -> Dict[str, Any]:
        lower = request.lower()
        include = []
        if "battery" in lower or "charg" in lower:
            include.append("battery")
        if "storage" in lower or "space" in lower:
            include.append("storage")
        return {"include": include or ["battery"]}

    async def run(self, args: DeviceStatusInput, on_progress: ProgressCallback) -> ToolResult:
        data: Dict[str, Any] = {}
        parts: List[str] = []
        if "battery" in args.include:
            battery = await self.bridge.battery_status()
            data["battery"] = battery
            state = "charging" if battery.get("charging") else "not charging"
            parts.append(f"Battery at {battery.get('level')}% ({state})")
        if "storage" in args.include:
            storage = await self.bridge.storage_status()
            data["storage"] = storage
            parts.append(f"{storage.get('free_gb')} GB free of {storage.get('total_gb')} GB")
        return ToolResult(success=True, message="; ".join(parts), data=data)


class CameraInput(ToolInput):
    camera: Literal["back", "front"] = "back"


class CameraCaptureTool(BaseTool[CameraInput]):
    name = "camera_capture"
    description = "Captures a photo with the device camera."
    domain = "camera"
    required_permissions = ("camera",)
    risk_level = RiskLevel.MEDIUM
    input_model = CameraInput
    capabilities = ("camera.capture",)
    produces = ("image",)
    keywords = ("photo", "picture", "camera", "capture", "selfie")
    estimated_duration_ms = 4000

    def __init__(self, bridge: DeviceBridge) -> None:
        self.bridge = bridge

    def extract_params(self, request: str, context: Dict[str, Any]) -> Dict[str, Any]:
        lower = request.lower()
        if "selfie" in lower or "front camera" in lower:
            return {"camera": "front"}
        return {}

    async def run(self, args: CameraInput, on_progress: ProgressCallback) -> ToolResult:
        on_progress(f"Opening {args.camera} camera")
        path = await self.bridge.capture_photo(args.camera)
        on_progress("Photo captured")
        return ToolResult.ok(f"Captured photo {path}", image_path=path)


class TextRecognitionInput(ToolInput):
    image_path: Optional[str] = None


class TextRecognitionTool(BaseTool[TextRecognitionInput]):
    name = "text_recognition"
    description = "Recognizes text in an image."
    domain = "vision"
    risk_level = RiskLevel.LOW
    input_model = TextRecognitionInput
    capabilities = ("text.recognize",)
    consumes = ("image",)
    produces = ("text",)
    keywords = ("text", "read", "ocr", "scan")
    estimated_duration_ms = 3000

    def __init__(self, bridge: DeviceBridge) -> None:
        self.bridge = bridge

    async def run(self, args: TextRecognitionInput, on_progress: ProgressCallback) -> ToolResult:
        if not args.image_path:
            raise ToolExecutionError("No image available for text recognition")
        on_progress(f"Reading text from {args.image_path}")
        text = await self.bridge.recognize_text(args.image_path)
        if not text.strip():
            return ToolResult.error("No text found in the image")
        return ToolResult.ok(text, text=text)


class LocationInput(ToolInput):
    precision: Literal["coarse", "fine"] = "coarse"


class LocationLookupTool(BaseTool[LocationInput]):
    name = "location_lookup"
    description = "Looks up the device's current location."
    domain = "location"
    required_permissions = ("location",)
    risk_level = RiskLevel.HIGH
    input_model = LocationInput
    capabilities = ("location.current",)
    keywords = ("location", "where", "gps", "position")
    estimated_duration_ms = 5000

    def __init__(self, bridge: DeviceBridge) -> None:
        self.bridge = bridge

    def extract_params(self, request: str, context: Dict[str, Any]) -> Dict[str, Any]:
        if re.search(r"\b(exact|precise)\b", request.lower()):
            return {"precision": "fine"}
        return {}

    async def run(self, args: LocationInput, on_progress: ProgressCallback) -> ToolResult:
        on_progress("Requesting location fix")
        loc = await self.bridge.current_location(args.precision)
        label = loc.get("label") or f"{loc.get('lat')}, {loc.get('lon')}"
        return ToolResult(success=True, message=f"You are near {label}", data={"location": loc})


class NotificationInput(ToolInput):
    limit: int = Field(default=10, ge=1, le=50)


class NotificationListTool(BaseTool[NotificationInput]):
    name = "notification_list"
    description = "Lists recent notifications."
    domain = "notifications"
    required_permissions = ("notifications",)
    risk_level = RiskLevel.HIGH
    input_model = NotificationInput
    capabilities = ("notifications.read",)
    produces = ("text",)
    keywords = ("notification", "notifications", "alerts")
    estimated_duration_ms = 1500

    def __init__(self, bridge: DeviceBridge) -> None:
        self.bridge = bridge

    async def run(self, args: NotificationInput, on_progress: ProgressCallback) -> ToolResult:
        items = await self.bridge.list_notifications(args.limit)
        if not items:
            return ToolResult.ok("No notifications", notifications=[], text="")
        lines = [f"{n.get('app', 'app')}: {n.get('title', '')}" for n in items]
        return ToolResult.ok(
            f"{len(items)} notifications", notifications=items, text="\n".join(lines)
        )
