"""Image-build preparation for Azure Image Builder runs.

Gets the Shared Image Gallery side ready before a build: resource groups,
a fresh per-build staging group, the gallery and a clean image definition,
plus the version number the build should publish.

Three phases:
    1. Preflight: six independent read-only checks run concurrently and are
       joined before anything is changed. Each check fills its own field of
       PreflightReport; a failed check leaves its field at the negative default.
    2. Planning: a pure function turns request + preflight into an ordered
       list of operations (printed as-is for --dry-run).
    3. Execution: operations run sequentially. Creates are fatal, tag updates
       and deletions are best-effort.
"""

import logging
import re
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from enum import Enum

from avdops.console import log_success
from avdops.errors import ImagePrepError, ProviderError
from avdops.gallery_provider import GalleryInfo, ImageGalleryProvider, ResourceGroupInfo
from avdops.retry_handler import poll_until

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_NAME = "win11-25h2-ent-compact"
DEFAULT_IMAGE_DEFINITION = "win11-25h2-ent-compact"
DEFAULT_RESOURCE_GROUP = "avd-image-builder-rg"
BASE_SKU = "win11-25h2-ent"

SECURITY_TAGS = {"SecurityControl": "Ignore"}
STAGING_PURPOSE = "AIB staging resources"
STAGING_TAGS = {**SECURITY_TAGS, "Purpose": STAGING_PURPOSE}
STAGING_MAX_AGE_SECONDS = 86400

# Marketplace source image size; smaller targets are built at this size and shrunk
SOURCE_IMAGE_DISK_GB = 127
DEFAULT_BUILD_DISK_GB = 128

DELETE_CONFIRM_ATTEMPTS = 30
DELETE_CONFIRM_INTERVAL = 2
VERSION_DELETE_SETTLE_SECONDS = 5
DEFINITION_DELETE_SETTLE_SECONDS = 3

_TRAILING_DIGITS = re.compile(r"(\d+)$")


class OperationKind(str, Enum):
    CREATE_RG = "CREATE_RG"
    UPDATE_RG_TAGS = "UPDATE_RG_TAGS"
    DELETE_OLD_STAGING = "DELETE_OLD_STAGING"
    CREATE_STAGING = "CREATE_STAGING"
    CREATE_GALLERY = "CREATE_GALLERY"
    UPDATE_GALLERY_TAGS = "UPDATE_GALLERY_TAGS"
    DELETE_IMAGE_VERSIONS = "DELETE_IMAGE_VERSIONS"
    DELETE_IMAGE_DEF = "DELETE_IMAGE_DEF"
    CREATE_IMAGE_DEF = "CREATE_IMAGE_DEF"


@dataclass
class PlannedOperation:
    kind: OperationKind
    target: str
    description: str

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.target}"


@dataclass
class ImageBuildRequest:
    """Parameters for one image build, with the derived resource names."""

    gallery_name: str
    image_name: str = DEFAULT_IMAGE_NAME
    resource_group: str = DEFAULT_RESOURCE_GROUP
    location: str | None = None
    image_definition: str = DEFAULT_IMAGE_DEFINITION
    image_version: str | None = None
    disk_size_gb: int | None = None
    staging_resource_group: str | None = None
    timestamp: int = field(default_factory=lambda: int(time.time()))

    def validate(self) -> None:
        if not self.gallery_name:
            raise ImagePrepError("Missing required argument: --gallery")
        if not self.image_name:
            raise ImagePrepError("Missing required argument: --image-name")
        if self.disk_size_gb is not None and self.disk_size_gb <= 0:
            raise ImagePrepError(f"Invalid disk size: {self.disk_size_gb}")

    @property
    def definition_name(self) -> str:
        if self.disk_size_gb:
            return f"{self.image_definition}-{self.disk_size_gb}gb"
        return self.image_definition

    @property
    def sku(self) -> str:
        """SKU must be unique per publisher/offer, so sized images get their own."""
        if self.disk_size_gb:
            return f"{BASE_SKU}-{self.disk_size_gb}gb"
        return BASE_SKU

    @property
    def staging_name(self) -> str:
        base = self.staging_resource_group or f"{self.resource_group}-staging"
        return f"{base}-{self.timestamp}"

    @property
    def build_disk_size_gb(self) -> int:
        if not self.disk_size_gb:
            return DEFAULT_BUILD_DISK_GB
        return max(self.disk_size_gb, SOURCE_IMAGE_DISK_GB)


@dataclass
class PreflightReport:
    """Joined results of the read-only checks."""

    existing_gallery: GalleryInfo | None = None
    resource_group: ResourceGroupInfo | None = None
    staging_exists: bool = False
    old_staging_groups: list[str] = field(default_factory=list)
    gallery_in_rg: bool = False
    image_definition_exists: bool = False
    image_versions: list[str] = field(default_factory=list)
    failed_checks: list[str] = field(default_factory=list)

    @property
    def rg_exists(self) -> bool:
        return self.resource_group is not None


@dataclass
class ImagePrepPlan:
    resource_group: str
    location: str
    gallery_name: str
    image_definition: str
    sku: str
    staging_resource_group: str
    build_disk_size_gb: int
    existing_versions: list[str] = field(default_factory=list)
    operations: list[PlannedOperation] = field(default_factory=list)
    reused_gallery: bool = False

    def kinds(self) -> list[OperationKind]:
        return [op.kind for op in self.operations]


@dataclass
class ImagePrepResult:
    plan: ImagePrepPlan
    image_version: str
    dry_run: bool = False
    warnings: list[str] = field(default_factory=list)

    def __repr__(self) -> str:
        status = "DRY-RUN" if self.dry_run else "SUCCESS"
        return (
            f"[{status}] {self.plan.gallery_name}/{self.plan.image_definition} "
            f"version {self.image_version}"
        )


def version_key(version: str) -> tuple[int, ...]:
    """Natural sort key: "1.10" sorts after "1.9"."""
    parts = []
    for part in version.split("."):
        match = re.match(r"\d+", part)
        parts.append(int(match.group()) if match else 0)
    return tuple(parts)


def next_version(version: str) -> str:
    """Increment the last component: 1.0 -> 1.1, 1.0.3 -> 1.0.4."""
    parts = version.split(".")
    major = parts[0] if parts and parts[0] else "1"
    minor = parts[1] if len(parts) > 1 and parts[1] else "0"
    if len(parts) < 3 or not parts[2]:
        return f"{major}.{int(minor) + 1}"
    return f"{major}.{minor}.{int(parts[2]) + 1}"


def resolve_image_version(existing: list[str], requested: str | None = None) -> str:
    """Pick the version to publish.

    No request: latest existing + 1, or "1.0" for an empty definition.
    A requested version that already exists is bumped the same way.
    """
    if not requested:
        if not existing:
            logger.info("No existing versions found; starting at 1.0")
            return "1.0"
        latest = max(existing, key=version_key)
        version = next_version(latest)
        logger.info(f"Auto-incrementing image version from {latest} -> {version}")
        return version

    if requested in existing:
        version = next_version(requested)
        logger.info(f"Requested version already exists; bumping to {version}")
        return version
    logger.info(f"Using specified image version: {requested}")
    return requested


def staging_timestamp(group_name: str) -> int | None:
    match = _TRAILING_DIGITS.search(group_name)
    return int(match.group(1)) if match else None


def plan_operations(
    request: ImageBuildRequest, report: PreflightReport, now: float
) -> ImagePrepPlan:
    """Build the ordered operation list. Pure: no provider calls.

    Raises:
        ImagePrepError: If no location is known for the resources to create
    """
    resource_group = request.resource_group
    location = request.location
    reused = False
    if report.existing_gallery:
        resource_group = report.existing_gallery.resource_group
        location = report.existing_gallery.location or location
        reused = True
    if not location and report.resource_group:
        location = report.resource_group.location
    if not location:
        raise ImagePrepError(
            f"Location unknown for resource group {resource_group}: pass --location"
        )

    plan = ImagePrepPlan(
        resource_group=resource_group,
        location=location,
        gallery_name=request.gallery_name,
        image_definition=request.definition_name,
        sku=request.sku,
        staging_resource_group=request.staging_name,
        build_disk_size_gb=request.build_disk_size_gb,
        existing_versions=list(report.image_versions),
        reused_gallery=reused,
    )
    ops = plan.operations

    def add(kind: OperationKind, target: str, description: str) -> None:
        ops.append(PlannedOperation(kind, target, description))

    if report.rg_exists:
        add(OperationKind.UPDATE_RG_TAGS, resource_group, f"Resource group exists: {resource_group}")
    else:
        add(OperationKind.CREATE_RG, resource_group, f"Will create resource group: {resource_group}")

    for name in report.old_staging_groups:
        created = staging_timestamp(name)
        if created is None:
            continue
        age = int(now) - created
        if age > STAGING_MAX_AGE_SECONDS:
            add(
                OperationKind.DELETE_OLD_STAGING,
                name,
                f"Will delete old staging RG: {name} (age: {age // 3600} hours)",
            )

    staging = plan.staging_resource_group
    add(OperationKind.CREATE_STAGING, staging, f"Will create staging resource group: {staging}")

    gallery = request.gallery_name
    if report.gallery_in_rg:
        add(OperationKind.UPDATE_GALLERY_TAGS, gallery, f"Gallery exists: {gallery}")
    else:
        add(OperationKind.CREATE_GALLERY, gallery, f"Will create gallery: {gallery}")

    definition = plan.image_definition
    if report.image_definition_exists:
        count = len(report.image_versions)
        add(OperationKind.DELETE_IMAGE_VERSIONS, definition, f"Will delete {count} existing versions")
        add(OperationKind.DELETE_IMAGE_DEF, definition, f"Will delete image definition: {definition}")
        add(OperationKind.CREATE_IMAGE_DEF, definition, f"Will recreate image definition: {definition}")
    else:
        add(OperationKind.CREATE_IMAGE_DEF, definition, f"Will create image definition: {definition}")
    return plan


class ImagePrep:
    """Run preflight, planning and execution against an ImageGalleryProvider."""

    def __init__(
        self,
        provider: ImageGalleryProvider,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
        max_workers: int = 6,
    ):
        self.provider = provider
        self.sleep = sleep
        self.clock = clock
        self.max_workers = max_workers

    def run(self, request: ImageBuildRequest, dry_run: bool = False) -> ImagePrepResult:
        """Prepare gallery resources for a build.

        Raises:
            ImagePrepError: Invalid request, unknown location, or a create failed
        """
        request.validate()
        if request.disk_size_gb:
            logger.info(
                f"Target disk size: {request.disk_size_gb} GB - "
                f"Image definition: {request.definition_name}"
            )

        report = self.preflight(request)
        if report.staging_exists:
            logger.warning(f"Staging resource group {request.staging_name} already exists")
        self.reconcile(request, report)
        plan = plan_operations(request, report, self.clock())

        logger.info("Preparing resource operations...")
        for op in plan.operations:
            logger.info(f"  - {op.description}")

        if dry_run:
            version = resolve_image_version(plan.existing_versions, request.image_version)
            logger.info("Dry run: no resources were changed")
            return ImagePrepResult(plan=plan, image_version=version, dry_run=True)

        warnings = self.execute(plan)
        try:
            versions = self.provider.list_image_versions(
                plan.resource_group, plan.gallery_name, plan.image_definition
            )
        except ProviderError as e:
            warnings.append(f"Could not list image versions: {e}")
            logger.warning(warnings[-1])
            versions = []
        version = resolve_image_version(versions, request.image_version)

        log_success(logger, "Resource provisioning complete.")
        return ImagePrepResult(plan=plan, image_version=version, warnings=warnings)

    def preflight(self, request: ImageBuildRequest) -> PreflightReport:
        """Run the read-only checks concurrently and join them."""
        provider = self.provider
        report = PreflightReport()
        rg = request.resource_group
        gallery = request.gallery_name
        definition = request.definition_name
        staging_prefix = f"{rg}-staging-"

        def check_gallery_anywhere() -> None:
            report.existing_gallery = provider.find_gallery(gallery)

        def check_resource_group() -> None:
            report.resource_group = provider.get_resource_group(rg)

        def check_staging() -> None:
            report.staging_exists = provider.get_resource_group(request.staging_name) is not None

        def check_old_staging() -> None:
            groups = provider.list_resource_groups_by_tag("Purpose", STAGING_PURPOSE)
            report.old_staging_groups = [g for g in groups if g.startswith(staging_prefix)]

        def check_gallery_in_rg() -> None:
            report.gallery_in_rg = provider.gallery_exists(rg, gallery)

        def check_image_definition() -> None:
            if provider.image_definition_exists(rg, gallery, definition):
                report.image_definition_exists = True
                report.image_versions = provider.list_image_versions(rg, gallery, definition)

        checks: dict[str, Callable[[], None]] = {
            "gallery": check_gallery_anywhere,
            "resource group": check_resource_group,
            "staging resource group": check_staging,
            "old staging groups": check_old_staging,
            "gallery in resource group": check_gallery_in_rg,
            "image definition": check_image_definition,
        }

        logger.info("Checking existing resources (parallel)...")
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(check): name for name, check in checks.items()}
            for future in as_completed(futures):
                name = futures[future]
                try:
                    future.result()
                except ProviderError as e:
                    report.failed_checks.append(name)
                    logger.warning(f"  Check '{name}' failed: {e}")

        logger.info("Resource checks complete. Processing results...")
        return report

    def reconcile(self, request: ImageBuildRequest, report: PreflightReport) -> None:
        """Re-read target state when an existing gallery lives in another resource group."""
        existing = report.existing_gallery
        if not existing:
            return
        logger.info(
            f"Found existing gallery {existing.name} in resource group "
            f"{existing.resource_group}; reusing it"
        )
        if existing.resource_group == request.resource_group:
            report.gallery_in_rg = True
            return

        rg = existing.resource_group
        definition = request.definition_name
        try:
            report.resource_group = self.provider.get_resource_group(rg)
            report.gallery_in_rg = True
            report.image_definition_exists = self.provider.image_definition_exists(
                rg, request.gallery_name, definition
            )
            report.image_versions = (
                self.provider.list_image_versions(rg, request.gallery_name, definition)
                if report.image_definition_exists
                else []
            )
        except ProviderError as e:
            raise ImagePrepError(f"Could not inspect gallery resource group {rg}: {e}") from e

    def execute(self, plan: ImagePrepPlan) -> list[str]:
        """Apply operations in order; returns warnings from best-effort steps."""
        warnings: list[str] = []
        logger.info("Executing resource operations...")
        for op in plan.operations:
            try:
                self._apply(op, plan)
            except ProviderError as e:
                if op.kind in (
                    OperationKind.CREATE_RG,
                    OperationKind.CREATE_STAGING,
                    OperationKind.CREATE_GALLERY,
                    OperationKind.CREATE_IMAGE_DEF,
                ):
                    raise ImagePrepError(f"{op.kind.value} failed for {op.target}: {e}") from e
                warnings.append(f"{op.kind.value} failed for {op.target}: {e}")
                logger.warning(warnings[-1])
        return warnings

    def _apply(self, op: PlannedOperation, plan: ImagePrepPlan) -> None:
        provider = self.provider
        rg = plan.resource_group
        gallery = plan.gallery_name
        definition = plan.image_definition

        if op.kind == OperationKind.CREATE_RG:
            logger.info(f"Creating resource group {rg}...")
            provider.create_resource_group(rg, plan.location, dict(SECURITY_TAGS))
        elif op.kind == OperationKind.UPDATE_RG_TAGS:
            provider.update_resource_group_tags(rg, dict(SECURITY_TAGS))
        elif op.kind == OperationKind.DELETE_OLD_STAGING:
            logger.info(f"Deleting old staging RG: {op.target}...")
            provider.delete_resource_group(op.target)
        elif op.kind == OperationKind.CREATE_STAGING:
            logger.info(f"Creating staging resource group {op.target}...")
            provider.create_resource_group(op.target, plan.location, dict(STAGING_TAGS))
        elif op.kind == OperationKind.CREATE_GALLERY:
            logger.info(f"Creating shared image gallery {gallery}...")
            provider.create_gallery(rg, gallery, plan.location, dict(SECURITY_TAGS))
        elif op.kind == OperationKind.UPDATE_GALLERY_TAGS:
            provider.update_gallery_tags(rg, gallery, dict(SECURITY_TAGS))
        elif op.kind == OperationKind.DELETE_IMAGE_VERSIONS:
            self._delete_versions(plan)
        elif op.kind == OperationKind.DELETE_IMAGE_DEF:
            self._delete_definition(plan)
        elif op.kind == OperationKind.CREATE_IMAGE_DEF:
            logger.info(f"Creating image definition {definition} with SKU {plan.sku}...")
            provider.create_image_definition(
                rg, gallery, definition, plan.location, plan.sku, dict(SECURITY_TAGS)
            )

    def _delete_versions(self, plan: ImagePrepPlan) -> None:
        if not plan.existing_versions:
            return
        logger.info("Deleting existing image versions...")
        for version in plan.existing_versions:
            logger.info(f"  Deleting version {version}...")
            try:
                self.provider.delete_image_version(
                    plan.resource_group, plan.gallery_name, plan.image_definition, version
                )
            except ProviderError as e:
                logger.warning(f"  Could not delete version {version}: {e}")
        logger.info("  Waiting for version deletions to complete...")
        self.sleep(VERSION_DELETE_SETTLE_SECONDS)

    def _delete_definition(self, plan: ImagePrepPlan) -> None:
        rg, gallery, definition = plan.resource_group, plan.gallery_name, plan.image_definition
        logger.info(f"Deleting existing image definition {definition}...")
        self.provider.delete_image_definition(rg, gallery, definition)

        def gone() -> bool:
            try:
                return not self.provider.image_definition_exists(rg, gallery, definition)
            except ProviderError as e:
                logger.debug(f"Definition check failed: {e}")
                return False

        confirmed = poll_until(
            gone,
            max_attempts=DELETE_CONFIRM_ATTEMPTS,
            interval=DELETE_CONFIRM_INTERVAL,
            description="image definition deletion",
            sleep=self.sleep,
        )
        if not confirmed:
            raise ProviderError(f"Image definition {definition} still present after deletion")
        self.sleep(DEFINITION_DELETE_SETTLE_SECONDS)


__all__ = [
    "ImageBuildRequest",
    "ImagePrep",
    "ImagePrepPlan",
    "ImagePrepResult",
    "OperationKind",
    "PlannedOperation",
    "PreflightReport",
    "next_version",
    "plan_operations",
    "resolve_image_version",
    "staging_timestamp",
    "version_key",
]
