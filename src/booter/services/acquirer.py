"""Image acquisition over plain HTTP(S)."""

from pathlib import Path
from typing import Optional
from urllib.parse import urlsplit
import logging

import httpx
import aiofiles

from booter.errors import DownloadError, NetworkError
from booter.models.artifact import ImageArtifact, ImageFormat

SQUASHFS_SUFFIXES = (".squashfs", ".sqfs", ".sfs")
ARCHIVE_SUFFIXES = (".tar", ".tar.gz", ".tgz", ".tar.xz", ".txz", ".tar.bz2", ".tbz2", ".tar.zst")


class ImageAcquirer:
    """Validates image URLs and downloads them to local storage.

    No authentication and no integrity check: the image is trusted as served.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize image acquirer.

        Args:
            timeout: Per-request network timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.logger = logging.getLogger("booter.acquirer")
        self.timeout = timeout
        self.transport = transport
        self.chunk_size = 64 * 1024  # 64KB chunks for progress granularity

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=True, transport=self.transport
        )

    @staticmethod
    def _validate_url(url: str) -> None:
        parts = urlsplit(url)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise NetworkError(f"Unsupported image URL: {url}")

    async def check_reachable(self, url: str) -> Optional[int]:
        """Check that the image URL answers with a success status.

        Args:
            url: HTTP/HTTPS image URL

        Returns:
            Server-reported size in bytes, or None if not reported

        Raises:
            NetworkError: On HTTP error status (e.g. 404) or transport failure
        """
        self._validate_url(url)
        self.logger.info(f"Checking URL: {url}")

        try:
            async with self._client() as client:
                response = await client.head(url)
                if response.status_code in (405, 501):
                    # Server refuses HEAD, ask for the body and stop after the headers
                    async with client.stream("GET", url) as response:
                        response.raise_for_status()
                        size = self._content_length(response)
                else:
                    response.raise_for_status()
                    size = self._content_length(response)
        except httpx.HTTPStatusError as e:
            raise NetworkError(
                f"Cannot access URL {url}: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise NetworkError(f"Cannot access URL {url}: {e}") from e

        if size is not None:
            self.logger.info(f"Image size: {size} bytes ({size / 1048576:.2f} MB)")
        return size

    def classify(self, url: str) -> ImageFormat:
        """Pick the install strategy from the URL suffix.

        Unknown suffixes are treated as archives.
        """
        name = urlsplit(url).path.lower()
        if name.endswith(SQUASHFS_SUFFIXES):
            return ImageFormat.SQUASHFS
        if not name.endswith(ARCHIVE_SUFFIXES):
            self.logger.warning(f"Unknown image type for {url}, assuming tarball")
        return ImageFormat.ARCHIVE

    async def fetch(self, url: str, dest_path: Path) -> ImageArtifact:
        """Download the image to dest_path.

        Data is streamed into ``<dest>.part`` and renamed only once the
        transfer is complete, so dest_path holds either a complete file or
        nothing.

        Args:
            url: HTTP/HTTPS image URL
            dest_path: Final local path

        Returns:
            ImageArtifact describing the downloaded file

        Raises:
            DownloadError: On HTTP error, transport failure, short read or disk error
        """
        self._validate_url(url)
        dest_path = Path(dest_path)
        part_path = dest_path.with_name(dest_path.name + ".part")
        self.logger.info(f"Downloading image: {url} -> {dest_path}")

        dest_path.parent.mkdir(parents=True, exist_ok=True)
        dest_path.unlink(missing_ok=True)

        try:
            written = await self._stream_to(url, part_path)
            part_path.replace(dest_path)
        except httpx.HTTPStatusError as e:
            part_path.unlink(missing_ok=True)
            raise DownloadError(
                f"Download of {url} failed: HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            part_path.unlink(missing_ok=True)
            raise DownloadError(f"Download of {url} failed: {e}") from e
        except OSError as e:
            part_path.unlink(missing_ok=True)
            raise DownloadError(f"Cannot write {part_path}: {e}") from e
        except DownloadError:
            part_path.unlink(missing_ok=True)
            raise

        self.logger.info(f"Download complete: {written} bytes")
        return ImageArtifact(
            url=url, local_path=dest_path, format=self.classify(url), size=written
        )

    async def _stream_to(self, url: str, part_path: Path) -> int:
        """Stream the response body into part_path.

        Returns:
            Bytes written
        """
        written = 0
        async with self._client() as client:
            async with client.stream("GET", url) as response:
                response.raise_for_status()
                expected = self._content_length(response)

                async with aiofiles.open(part_path, "wb") as f:
                    last_progress = -1
                    async for chunk in response.aiter_bytes(chunk_size=self.chunk_size):
                        await f.write(chunk)
                        written += len(chunk)

                        if expected:
                            # Log progress every 10%
                            current_progress = int((written / expected) * 100)
                            if current_progress >= last_progress + 10:
                                last_progress = current_progress
                                self.logger.debug(
                                    f"Download progress: {current_progress}% "
                                    f"({written}/{expected} bytes)"
                                )

        if expected is not None and written != expected:
            raise DownloadError(
                f"SIZE_MISMATCH: server reported {expected} bytes, received {written}"
            )
        return written

    @staticmethod
    def _content_length(response: httpx.Response) -> Optional[int]:
        value = response.headers.get("Content-Length")
        if value is None or "Content-Encoding" in response.headers:
            return None
        try:
            return int(value)
        except ValueError:
            return None

    def cleanup(self, artifact: ImageArtifact) -> None:
        """Delete a downloaded artifact and any leftover partial file."""
        path = Path(artifact.local_path)
        path.unlink(missing_ok=True)
        path.with_name(path.name + ".part").unlink(missing_ok=True)
        self.logger.info(f"Removed image {path}")
