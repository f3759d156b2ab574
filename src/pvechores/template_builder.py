"""
Kali Linux container template builder.

Downloads the Kali rootfs squashfs image, verifies its SHA-256 checksum,
converts it to a tar.xz template in the host's template cache and can create
a container from it.
"""

import hashlib
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Any, Optional

import requests

from .config import TemplateSettings
from .models import ChecksumMismatchError, PreconditionError, TemplateBuildError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 8192
REQUIRED_TOOLS = ("sqfs2tar", "xz")


class TemplateBuilder:
    """Builds an LXC template from a remote squashfs root filesystem."""

    def __init__(self, settings: TemplateSettings):
        self.settings = settings

    @property
    def download_path(self) -> Path:
        return self.settings.download_dir / "rootfs.squashfs"

    def template_exists(self) -> bool:
        return self.settings.template_path.is_file()

    def check_tools(self) -> None:
        """
        Ensure conversion tools are installed.

        Raises:
            PreconditionError: If sqfs2tar or xz is missing
        """
        for tool in REQUIRED_TOOLS:
            if shutil.which(tool) is None:
                hint = ", please install squashfs-tools-ng" if tool == "sqfs2tar" else ""
                raise PreconditionError(f"{tool} not found{hint}")

    def build(self) -> bool:
        """
        Download, verify and convert the image unless the template exists.

        Returns:
            True if the template was built, False if it already existed

        Raises:
            PreconditionError: If conversion tools are missing
            ChecksumMismatchError: If the download does not match the expected SHA-256
            TemplateBuildError: If download or conversion fails
        """
        if self.template_exists():
            logger.info(f"Template already exists at {self.settings.template_path}")
            return False

        self.check_tools()
        image = self.download()
        try:
            self.convert(image)
        finally:
            image.unlink(missing_ok=True)
        return True

    def download(self) -> Path:
        """
        Stream the image to disk while hashing it.

        Returns:
            Path of the verified download
        """
        target = self.download_path
        target.parent.mkdir(parents=True, exist_ok=True)
        digest = hashlib.sha256()

        logger.info(f"Downloading {self.settings.url}")
        try:
            response = requests.get(self.settings.url, stream=True, timeout=60)
            response.raise_for_status()
            with open(target, "wb") as image_file:
                for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                    if chunk:
                        image_file.write(chunk)
                        digest.update(chunk)
        except (requests.RequestException, OSError) as e:
            target.unlink(missing_ok=True)
            raise TemplateBuildError(f"Failed to download squashfs image: {e}") from e

        actual = digest.hexdigest()
        if actual != self.settings.sha256.lower():
            target.unlink(missing_ok=True)
            raise ChecksumMismatchError(
                f"Checksum verification failed for squashfs image: expected {self.settings.sha256}, got {actual}"
            )

        logger.info("Downloaded and verified squashfs image")
        return target

    def convert(self, image: Path) -> Path:
        """
        Convert the squashfs image to tar.xz in the template cache.

        Output goes to a .partial file that is renamed only on success.
        """
        template = self.settings.template_path
        partial = template.with_name(template.name + ".partial")
        template.parent.mkdir(parents=True, exist_ok=True)

        logger.info(f"Converting {image} to {template}")
        with open(partial, "wb") as out:
            sqfs2tar = subprocess.Popen(["sqfs2tar", str(image)], stdout=subprocess.PIPE)
            xz = subprocess.Popen(["xz", "-c"], stdin=sqfs2tar.stdout, stdout=out)
            # let sqfs2tar see SIGPIPE if xz exits early
            sqfs2tar.stdout.close()
            xz_status = xz.wait()
            sqfs2tar_status = sqfs2tar.wait()

        if sqfs2tar_status != 0 or xz_status != 0:
            partial.unlink(missing_ok=True)
            raise TemplateBuildError(
                f"Conversion failed (sqfs2tar exit {sqfs2tar_status}, xz exit {xz_status})"
            )

        partial.replace(template)
        logger.info(f"Conversion successful: {template}")
        return template

    def create_container(self, client: Any, vmid: Optional[int] = None) -> int:
        """
        Create an unprivileged container from the template.

        Returns:
            The new container's vmid
        """
        settings = self.settings
        if vmid is None:
            vmid = client.next_vmid()

        client.create_container(
            vmid,
            settings.volume_id,
            hostname=settings.hostname,
            cores=settings.cores,
            memory=settings.memory_mb,
            rootfs=f"{settings.storage}:{settings.disk_gb}",
            net0=f"name=eth0,bridge={settings.bridge},ip=dhcp",
            unprivileged=1 if settings.unprivileged else 0,
            features="nesting=1",
            tags=settings.tags,
            ostype="debian",
        )
        return vmid
