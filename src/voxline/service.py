"""Wire store, catalog, matcher, pipeline, supervisor and coordinator together."""

from __future__ import annotations

import logging
from pathlib import Path
from types import TracebackType

from db.store import SqlStore
from voxline.audio import AudioPipeline
from voxline.backends import BackendSupervisor
from voxline.backends.supervisor import TransportFactory
from voxline.config import VoxlineConfig
from voxline.coordinator import GenerationCoordinator
from voxline.dialogue import DialogueMatcher
from voxline.voices import VoiceCatalog, VoiceReference

__all__ = ["VoxlineService"]

logger = logging.getLogger(__name__)


class VoxlineService:
    """Owns every component built from one :class:`VoxlineConfig`.

    Use as an async context manager so backend supervision starts and stops
    with the service::

        async with VoxlineService.from_config(cfg) as svc:
            line = await svc.coordinator.resolve("Guard", "Halt!")
    """

    def __init__(
        self,
        config: VoxlineConfig,
        store: SqlStore,
        catalog: VoiceCatalog,
        supervisor: BackendSupervisor,
        coordinator: GenerationCoordinator,
    ) -> None:
        self.config = config
        self.store = store
        self.catalog = catalog
        self.supervisor = supervisor
        self.coordinator = coordinator

    @classmethod
    def from_config(
        cls,
        config: VoxlineConfig,
        *,
        transport_factory: TransportFactory | None = None,
    ) -> VoxlineService:
        store = SqlStore(config.store.database_url)
        catalog = VoiceCatalog(config.voices.root, language=config.voices.language)
        supervisor = BackendSupervisor(
            config.backends,
            transport_factory=transport_factory,
            checkout_timeout_s=config.supervisor.checkout_timeout_s,
        )
        pools = {
            "male": [VoiceReference.parse(v) for v in config.voices.male_voices],
            "female": [VoiceReference.parse(v) for v in config.voices.female_voices],
        }
        coordinator = GenerationCoordinator(
            store,
            supervisor,
            AudioPipeline(config.pipeline),
            catalog,
            DialogueMatcher(config.matcher.merge_threshold),
            lines_dir=Path(config.store.lines_dir),
            voice_pools=pools,
            verify_threshold=config.verify.threshold,
        )
        return cls(config, store, catalog, supervisor, coordinator)

    async def start(self) -> None:
        await self.supervisor.start()
        logger.info("voxline service started with %d backend(s)", len(self.config.backends))

    async def stop(self) -> None:
        await self.coordinator.aclose()
        await self.supervisor.stop()
        self.store.close()

    async def __aenter__(self) -> VoxlineService:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()
