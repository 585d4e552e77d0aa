# mma/uploads.py

import asyncio
import logging
from io import BytesIO
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from PIL import Image, UnidentifiedImageError

from config.settings import settings as default_settings, Settings

from .api_client import MmaApiClient
from .assets import AssetStabilizer, strip_signed_query
from .errors import UploadFailure, humanize_upload_error
from .model import UploadCategory, UploadItem
from .utils import gen_id, get_timestamp_ms, is_http_url

logger = logging.getLogger(__name__)

# category -> (max items, replace on new input)
CATEGORY_POLICY: Dict[str, Tuple[int, bool]] = {
    "product": (1, True),
    "logo": (1, True),
    "inspiration": (4, False),
}


class PreviewStore:
    """
    Local preview files for picked uploads; released as soon as an item goes away.
    """

    def __init__(self, root: Optional[str] = None, settings: Settings = default_settings):
        self.root = Path(root or settings.PREVIEW_DIR)

    def create(self, data: bytes, suffix: str = "") -> str:
        if not self.root.exists():
            self.root.mkdir(parents=True, exist_ok=True)
        path = self.root / f"preview_{get_timestamp_ms()}_{gen_id()[:8]}{suffix}"
        path.write_bytes(data)
        return str(path)

    def release(self, preview: Optional[str]) -> None:
        if not preview or is_http_url(preview):
            return
        path = Path(preview)
        if path.parent != self.root:
            return
        path.unlink(missing_ok=True)


def sniff_image(data: bytes) -> Optional[Tuple[str, str]]:
    """
    (content type, file suffix) when Pillow recognises `data` as an image, else None.
    """
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return None
    if not fmt:
        return None
    content_type = Image.MIME.get(fmt.upper(), f"image/{fmt.lower()}")
    return content_type, "." + fmt.lower().replace("jpeg", "jpg")


class UploadPipeline:
    """
    Reference images feeding job inputs, one bounded list per category.
    """

    def __init__(
        self,
        api: MmaApiClient,
        stabilizer: Optional[AssetStabilizer] = None,
        previews: Optional[PreviewStore] = None,
        settings: Settings = default_settings,
    ):
        self.api = api
        self.stabilizer = stabilizer if stabilizer is not None else AssetStabilizer(api, settings=settings)
        self.previews = previews if previews is not None else PreviewStore(settings=settings)
        self.max_bytes = settings.UPLOAD_MAX_BYTES
        self._items: Dict[str, List[UploadItem]] = {name: [] for name in CATEGORY_POLICY}
        self._payloads: Dict[str, bytes] = {}
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def items(self, category: UploadCategory) -> List[UploadItem]:
        return list(self._bucket(category))

    def get(self, category: UploadCategory, item_id: str) -> Optional[UploadItem]:
        return next((it for it in self._bucket(category) if it.id == item_id), None)

    @property
    def pending(self) -> bool:
        return any(it.uploading for bucket in self._items.values() for it in bucket)

    async def wait_idle(self) -> None:
        while True:
            running = [t for t in self._tasks.values() if not t.done()]
            if not running:
                return
            await asyncio.gather(*running, return_exceptions=True)

    def references(self, category: UploadCategory) -> List[str]:
        return [ref for ref in (it.reference for it in self._bucket(category)) if ref]

    def asset_payload(self) -> Dict[str, object]:
        """
        `assets` section of a still creation request.
        """
        product = self.references("product")
        logo = self.references("logo")
        return {
            "product_image_url": product[0] if product else None,
            "logo_image_url": logo[0] if logo else None,
            "inspiration_image_urls": self.references("inspiration")[: CATEGORY_POLICY["inspiration"][0]],
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def add_files(self, category: UploadCategory, files: Iterable[Tuple[str, bytes]]) -> List[UploadItem]:
        """
        Add picked files and start their uploads in the background.
        Non-images are skipped; replace-only categories drop their current item.
        """
        cap, replace = self._policy(category)
        incoming = []
        for file_name, data in files:
            sniffed = sniff_image(data)
            if sniffed is None:
                logger.info("[Upload] skipping %s: %s", file_name, humanize_upload_error("unsupported"))
                continue
            incoming.append((file_name, data, sniffed))
        if not incoming:
            return []

        remaining = cap if replace else max(0, cap - len(self._bucket(category)))
        accepted = incoming[:remaining]
        if not accepted:
            return []

        if replace:
            for old in self._bucket(category):
                self._discard(old)
            self._items[category] = []

        created = []
        for file_name, data, (content_type, suffix) in accepted:
            item = UploadItem(
                id=gen_id(category),
                category=category,
                origin="file",
                preview=self.previews.create(data, suffix),
                file_name=file_name,
                content_type=content_type,
            )
            if len(data) > self.max_bytes:
                item.uploading = False
                item.error = humanize_upload_error("too_big")
            else:
                self._payloads[item.id] = data
            created.append(item)

        self._items[category] = (self._bucket(category) + created)[:cap]
        for item in created:
            if item.uploading:
                self._start(item, self._upload_file(item))
        return created

    def add_url(self, category: UploadCategory, url: str) -> UploadItem:
        """
        Add a pasted link; it is republished on the asset host in the background.
        """
        cap, replace = self._policy(category)
        if not is_http_url(url):
            raise ValueError(humanize_upload_error("link_broken"))
        if replace:
            for old in self._bucket(category):
                self._discard(old)
            self._items[category] = []
        elif len(self._bucket(category)) >= cap:
            raise ValueError(f"{category} already holds {cap} items")

        item = UploadItem(id=gen_id(f"{category}_url"), category=category, origin="url", preview=url.strip())
        self._items[category] = (self._bucket(category) + [item])[:cap]
        self._start(item, self._store_url(item))
        return item

    def retry(self, category: UploadCategory, item_id: str) -> Optional[UploadItem]:
        item = self.get(category, item_id)
        if item is None or item.uploading or item.remote_url:
            return item
        if item.origin == "url":
            self._patch(item, uploading=True, error=None)
            self._start(item, self._store_url(item))
        elif item.id in self._payloads:
            self._patch(item, uploading=True, error=None)
            self._start(item, self._upload_file(item))
        return item

    def remove(self, category: UploadCategory, item_id: str) -> bool:
        item = self.get(category, item_id)
        if item is None:
            return False
        self._discard(item)
        self._items[category] = [it for it in self._bucket(category) if it.id != item_id]
        return True

    def move(self, category: UploadCategory, src: int, dst: int) -> bool:
        """
        Reorder locally; no network involved. Out-of-range indexes are ignored.
        """
        bucket = self._bucket(category)
        if not (0 <= src < len(bucket) and 0 <= dst < len(bucket)):
            return False
        moved = bucket.pop(src)
        bucket.insert(dst, moved)
        return True

    def clear(self) -> None:
        for category in self._items:
            for item in self._bucket(category):
                self._discard(item)
            self._items[category] = []

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _policy(self, category: str) -> Tuple[int, bool]:
        if category not in CATEGORY_POLICY:
            raise ValueError(f"unknown upload category: {category}")
        return CATEGORY_POLICY[category]

    def _bucket(self, category: str) -> List[UploadItem]:
        self._policy(category)
        return self._items[category]

    def _alive(self, item: UploadItem) -> bool:
        return any(it is item for it in self._items.get(item.category, []))

    def _patch(self, item: UploadItem, **changes) -> None:
        for key, value in changes.items():
            setattr(item, key, value)

    def _discard(self, item: UploadItem) -> None:
        task = self._tasks.pop(item.id, None)
        if task is not None and not task.done():
            task.cancel()
        self._payloads.pop(item.id, None)
        if item.origin == "file":
            self.previews.release(item.preview)

    def _start(self, item: UploadItem, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks[item.id] = task

        def _forget(done: "asyncio.Task[None]", item_id: str = item.id) -> None:
            if self._tasks.get(item_id) is done:
                del self._tasks[item_id]

        task.add_done_callback(_forget)

    async def _upload_file(self, item: UploadItem) -> None:
        data = self._payloads.get(item.id)
        if data is None:
            return
        try:
            target = await self.api.request_signed_upload(
                content_type=item.content_type or "application/octet-stream",
                file_name=item.file_name or item.id,
                folder=item.category,
                kind=item.category,
            )
            await self.api.put_bytes(target["upload_url"], data, item.content_type or "application/octet-stream")
        except UploadFailure as e:
            logger.warning("[Upload] %s failed: %s", item.id, e)
            if self._alive(item):
                self._patch(item, uploading=False, error=str(e) or humanize_upload_error(None))
            return

        if not self._alive(item):
            logger.info("[Upload] %s finished after removal, dropping result", item.id)
            return
        self._patch(item, remote_url=strip_signed_query(target["public_url"]), uploading=False, error=None)
        self._payloads.pop(item.id, None)
        logger.info("[Upload] %s -> %s", item.id, item.remote_url)

    async def _store_url(self, item: UploadItem) -> None:
        stable = await self.stabilizer.ensure_stable(item.preview, item.category)
        if not self._alive(item):
            return
        self._patch(item, remote_url=stable, uploading=False, error=None)
