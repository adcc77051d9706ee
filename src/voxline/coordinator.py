"""Resolve-or-generate entry point with single-flight job coalescing.

``GenerationCoordinator.resolve`` turns (character, text, voice) into a cached
artifact. Concurrent callers asking for the same line share one
:class:`GenerationJob`: the job is registered in the job table in the same
event-loop step that found it missing, so at most one synthesis runs per key.
Results are broadcast through a single :class:`asyncio.Future`; callers await
it through :func:`asyncio.shield`, so a cancelled caller only detaches itself
and the job still runs to completion for the cache.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from db.store import CharacterRecord, VoiceLineKey, VoiceLineRecord
from voxline.audio import AudioPipeline, artifact_path, write_atomic
from voxline.backends import BackendSupervisor, InferenceRequest, InferenceResponse
from voxline.dialogue import DialogueCandidate, DialogueMatcher, MatchDecision, transcript_similarity
from voxline.errors import BackendUnavailable, GenerationRejected, NotFound, StoreError
from voxline.voices import GLOBAL, VoiceCatalog, VoiceReference

__all__ = [
    "Store",
    "ResolveRequest",
    "ResolvedLine",
    "GenerationJob",
    "GenerationCoordinator",
]

logger = logging.getLogger(__name__)

JobKey = tuple[int, str, str, str]

FEMALE = ("female", "f", "woman", "girl")


class Store(Protocol):
    """Persistence operations the coordinator relies on (see :class:`db.store.SqlStore`)."""

    def find_character(self, name: str, gender: str = "") -> CharacterRecord | None: ...

    def create_character(self, name: str, gender: str, voice: VoiceReference) -> CharacterRecord: ...

    def voice_usage_counts(self) -> dict[VoiceReference, int]: ...

    def list_dialogue(self, character_id: int) -> list[DialogueCandidate]: ...

    def upsert_dialogue(self, character_id: int, text: str) -> int: ...

    def find_voice_line(self, key: VoiceLineKey) -> VoiceLineRecord | None: ...

    def replace_voice_line(
        self, key: VoiceLineKey, path: Path, metadata: Mapping[str, Any]
    ) -> VoiceLineRecord: ...

    def set_character_voice(self, character_id: int, voice: VoiceReference) -> CharacterRecord: ...

    def list_voice_lines(self, voice: VoiceReference) -> list[VoiceLineRecord]: ...


@dataclass(frozen=True, slots=True)
class ResolveRequest:
    """One line to voice, as accepted by :meth:`GenerationCoordinator.prefetch`."""

    character: str
    text: str
    voice: str | None = None
    location: str | None = None
    gender: str = ""
    force: bool = False


@dataclass(frozen=True, slots=True)
class ResolvedLine:
    """Artifact reference returned to callers.

    Attributes:
        path: Location of the encoded artifact.
        character_id: Owning character.
        dialogue_id: Dialogue the line was resolved to.
        text: Stored dialogue text (may differ from the request for merged
            near-duplicates).
        voice: Voice the artifact was generated with.
        metadata: Audio measurements recorded with the artifact.
        cached: ``True`` when served from the cache without generation.
    """

    path: Path
    character_id: int
    dialogue_id: int
    text: str
    voice: VoiceReference
    metadata: dict[str, Any]
    cached: bool


@dataclass(slots=True)
class GenerationJob:
    """In-flight work for one job key. Mutated only by its driving task."""

    key: JobKey
    future: asyncio.Future
    character: CharacterRecord
    voice: VoiceReference
    text: str
    dialogue_id: int | None
    force: bool = False
    state: str = "pending"
    waiters: int = 0
    backend: str | None = field(default=None)


def _consume_exception(fut: asyncio.Future) -> None:
    # keeps asyncio quiet when every waiter detached before a failure
    if not fut.cancelled():
        fut.exception()


class GenerationCoordinator:
    """Single entry point for resolving or producing voice lines.

    Args:
        store: Persistence facade.
        supervisor: Backend supervisor providing ``synthesis`` (and optionally
            ``transcription``) slots.
        pipeline: Post-processing pipeline.
        catalog: Voice sample catalog.
        matcher: Dialogue near-duplicate matcher.
        lines_dir: Root directory for artifacts.
        voice_pools: Gendered pools (``"male"``/``"female"``) used to assign a
            voice to characters seen for the first time.
        verify_threshold: Minimum transcript similarity; ``None`` disables
            verification.
    """

    def __init__(
        self,
        store: Store,
        supervisor: BackendSupervisor,
        pipeline: AudioPipeline,
        catalog: VoiceCatalog,
        matcher: DialogueMatcher,
        *,
        lines_dir: Path,
        voice_pools: Mapping[str, Sequence[VoiceReference]] | None = None,
        verify_threshold: float | None = None,
    ) -> None:
        self.store = store
        self.supervisor = supervisor
        self.pipeline = pipeline
        self.catalog = catalog
        self.matcher = matcher
        self.lines_dir = Path(lines_dir)
        self.voice_pools = {k: list(v) for k, v in (voice_pools or {}).items()}
        self.verify_threshold = verify_threshold
        self._jobs: dict[JobKey, GenerationJob] = {}
        self._tasks: set[asyncio.Task] = set()
        self._dialogue_locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def jobs(self) -> dict[JobKey, GenerationJob]:
        """Snapshot of the job table."""

        return dict(self._jobs)

    # ----- public API ----------------------------------------------------
    async def resolve(
        self,
        character: str,
        text: str,
        voice: str | None = None,
        location: str | None = None,
        *,
        gender: str = "",
        force: bool = False,
    ) -> ResolvedLine:
        """Return a cached voice line or generate it.

        Args:
            character: Character display name.
            text: Raw dialogue text.
            voice: Voice name; ``None`` uses the character's default voice.
            location: Voice location (``"global"`` or a game name).
            gender: Character gender tag, part of the character identity.
            force: Regenerate even when a cached line exists, replacing it.

        Returns:
            The artifact reference shared by every caller of the same job.

        Raises:
            VoxlineError: One classified error, identical for all waiters.
        """

        gender = gender.strip().lower()
        self.matcher.canonical(text)
        explicit = VoiceReference(voice, location or GLOBAL) if voice else None
        if explicit is not None:
            await asyncio.to_thread(self.catalog.samples, explicit)
        game = location if location and location != GLOBAL else None
        char = await asyncio.to_thread(self._ensure_character, character.strip(), gender, explicit, game)
        voice_ref = explicit or char.voice

        candidates = await asyncio.to_thread(self.store.list_dialogue, char.id)
        decision = self.matcher.match(text, candidates)
        key: JobKey = (char.id, decision.key, voice_ref.name, voice_ref.location)

        job = self._jobs.get(key)
        if job is None and decision.dialogue_id is not None and not force:
            hit = await asyncio.to_thread(self.store.find_voice_line, self._line_key(decision.dialogue_id, voice_ref))
            if hit is not None:
                logger.debug("Cache hit for %s / dialogue %d / %s", char.name, decision.dialogue_id, voice_ref)
                return self._resolved(char, decision.dialogue_id, decision.text, voice_ref, hit, cached=True)
            job = self._jobs.get(key)

        if job is None:
            logger.debug("Cache miss for %s: %r (%s)", char.name, decision.text, voice_ref)
            job = self._start_job(key, char, voice_ref, decision, force)
        return await self._wait(job)

    def prefetch(self, requests: Iterable[ResolveRequest]) -> list[asyncio.Task]:
        """Resolve a batch of lines in the background.

        Failures are logged, never raised. Interactive callers of the same
        lines attach to the in-flight jobs.
        """

        tasks = []
        for req in requests:
            task = asyncio.create_task(
                self.resolve(
                    req.character,
                    req.text,
                    req.voice,
                    req.location,
                    gender=req.gender,
                    force=req.force,
                )
            )
            task.add_done_callback(self._log_prefetch(req))
            self._track(task)
            tasks.append(task)
        return tasks

    async def drain(self) -> None:
        """Wait for every background job and prefetch to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel in-flight work; pending waiters receive ``BackendUnavailable``."""

        tasks = list(self._tasks)
        for t in tasks:
            t.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    # ----- job table -----------------------------------------------------
    def _start_job(
        self,
        key: JobKey,
        char: CharacterRecord,
        voice: VoiceReference,
        decision: MatchDecision,
        force: bool,
    ) -> GenerationJob:
        # check-and-insert without an intervening await
        existing = self._jobs.get(key)
        if existing is not None:
            return existing
        fut = asyncio.get_running_loop().create_future()
        fut.add_done_callback(_consume_exception)
        job = GenerationJob(
            key=key,
            future=fut,
            character=char,
            voice=voice,
            text=decision.text,
            dialogue_id=decision.dialogue_id,
            force=force,
        )
        self._jobs[key] = job
        self._track(asyncio.create_task(self._drive(job), name=f"generate-{char.id}-{voice}"))
        return job

    async def _wait(self, job: GenerationJob) -> ResolvedLine:
        job.waiters += 1
        try:
            return await asyncio.shield(job.future)
        finally:
            job.waiters -= 1

    def _track(self, task: asyncio.Task) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drive(self, job: GenerationJob) -> None:
        try:
            result = await self._produce(job)
        except asyncio.CancelledError:
            job.state = "failed"
            job.future.set_exception(BackendUnavailable("Generation was cancelled before completion"))
            raise
        except Exception as exc:  # noqa: BLE001
            job.state = "failed"
            logger.warning(
                "Generation failed for %s %r (%s): %s: %s",
                job.character.name,
                job.text,
                job.voice,
                getattr(exc, "kind", type(exc).__name__),
                exc,
            )
            job.future.set_exception(exc)
        else:
            job.state = "done"
            job.future.set_result(result)
        finally:
            if self._jobs.get(job.key) is job:
                del self._jobs[job.key]

    # ----- job driving ---------------------------------------------------
    async def _produce(self, job: GenerationJob) -> ResolvedLine:
        char, voice = job.character, job.voice

        if job.dialogue_id is None:
            job.dialogue_id, job.text = await self._persist_dialogue(char.id, job.text)
        if not job.force:
            # the line may have been stored after this caller's cache lookup
            hit = await asyncio.to_thread(self.store.find_voice_line, self._line_key(job.dialogue_id, voice))
            if hit is not None:
                return self._resolved(char, job.dialogue_id, job.text, voice, hit, cached=True)

        params = await asyncio.to_thread(self.catalog.params, voice)
        request = InferenceRequest(text=job.text, voice=voice.name, location=voice.location, params=params)

        job.state = "synthesizing"
        async with self.supervisor.checkout("synthesis") as slot:
            job.backend = slot.backend
            response = await slot.synthesize(request)
        logger.debug("Synthesized %r on %s", job.text, job.backend)

        if self.verify_threshold is not None and self.supervisor.has_role("transcription"):
            job.state = "verifying"
            await self._verify(job.text, response, self.verify_threshold)

        job.state = "processing"
        processed = await asyncio.to_thread(self.pipeline.process, response.samples, response.sample_rate)

        job.state = "storing"
        path = artifact_path(self.lines_dir, voice.location, voice.name, processed.extension)
        try:
            await asyncio.to_thread(write_atomic, processed.data, path)
        except OSError as exc:
            raise StoreError(f"Writing artifact {path} failed: {exc}") from exc
        try:
            # the commit finishes even when this job is cancelled
            record = await asyncio.shield(
                asyncio.to_thread(
                    self.store.replace_voice_line,
                    self._line_key(job.dialogue_id, voice),
                    path,
                    processed.metadata.to_dict(),
                )
            )
        except Exception:
            path.unlink(missing_ok=True)
            raise
        logger.info("Generated %s for %s: %r", path.name, char.name, job.text)
        return self._resolved(char, job.dialogue_id, job.text, voice, record, cached=False)

    async def _persist_dialogue(self, character_id: int, text: str) -> tuple[int, str]:
        """Insert a new dialogue, re-matching first so near-duplicates stay merged."""

        lock = self._dialogue_locks.get(character_id)
        if lock is None:
            lock = self._dialogue_locks[character_id] = asyncio.Lock()
        async with lock:
            candidates = await asyncio.to_thread(self.store.list_dialogue, character_id)
            decision = self.matcher.match(text, candidates)
            if decision.dialogue_id is not None:
                return decision.dialogue_id, decision.text
            dialogue_id = await asyncio.to_thread(self.store.upsert_dialogue, character_id, decision.text)
            return dialogue_id, decision.text

    async def _verify(self, text: str, response: InferenceResponse, threshold: float) -> None:
        async with self.supervisor.checkout("transcription") as slot:
            transcript = await slot.transcribe(response.samples, response.sample_rate)
        score = transcript_similarity(text, transcript)
        logger.debug("Transcript %r scored %.3f against %r", transcript, score, text)
        if score < threshold:
            raise GenerationRejected(score, threshold)

    # ----- characters ----------------------------------------------------
    async def set_character_voice(
        self, character: str, voice: str, location: str | None = None, *, gender: str = ""
    ) -> CharacterRecord:
        """Pin ``character`` to a voice, creating the character if it is new.

        Lines already generated with the previous voice stay cached; later
        default-voice requests use the new voice.

        Raises:
            VoiceNotFound: If the voice has no reference samples.
        """

        name, gender = character.strip(), gender.strip().lower()
        if not name:
            raise NotFound("Character name is empty")
        ref = VoiceReference(voice, location or GLOBAL)
        await asyncio.to_thread(self.catalog.samples, ref)

        def _pin() -> CharacterRecord:
            found = self.store.find_character(name, gender)
            if found is None:
                return self.store.create_character(name, gender, ref)
            if found.voice == ref:
                return found
            return self.store.set_character_voice(found.id, ref)

        return await asyncio.to_thread(_pin)

    async def voice_lines(self, voice: str, location: str | None = None) -> list[VoiceLineRecord]:
        """Return the cached lines generated with a voice."""

        return await asyncio.to_thread(self.store.list_voice_lines, VoiceReference(voice, location or GLOBAL))

    def _ensure_character(
        self,
        name: str,
        gender: str,
        voice: VoiceReference | None,
        game: str | None = None,
    ) -> CharacterRecord:
        if not name:
            raise NotFound("Character name is empty")
        found = self.store.find_character(name, gender)
        if found is not None:
            return found
        assigned = voice or self._assign_voice(name, gender, game)
        return self.store.create_character(name, gender, assigned)

    def _assign_voice(self, name: str, gender: str, game: str | None) -> VoiceReference:
        """Pick a voice for a new character.

        A game voice named after the character wins, matched as given and then
        lowercased. Otherwise the least-used voice of the gendered pool is
        taken, pool order breaking ties. Pool entries without reference
        samples are skipped.
        """

        if game:
            for candidate in dict.fromkeys((name, name.lower())):
                own = VoiceReference(candidate, game)
                if self.catalog.exists(own):
                    logger.debug("Character %r has its own %s voice", name, game)
                    return own
        pool_name = "female" if gender in FEMALE else "male"
        pool = [v for v in self.voice_pools.get(pool_name) or [] if self.catalog.exists(v)]
        if not pool:
            raise NotFound(f"No {pool_name} voice available to assign")
        usage = self.store.voice_usage_counts()
        chosen = min(pool, key=lambda v: usage.get(v, 0))
        self.catalog.samples(chosen)
        return chosen

    # ----- helpers -------------------------------------------------------
    @staticmethod
    def _line_key(dialogue_id: int, voice: VoiceReference) -> VoiceLineKey:
        return VoiceLineKey(dialogue_id, voice.name, voice.location)

    @staticmethod
    def _resolved(
        char: CharacterRecord,
        dialogue_id: int,
        text: str,
        voice: VoiceReference,
        record: VoiceLineRecord,
        *,
        cached: bool,
    ) -> ResolvedLine:
        return ResolvedLine(
            path=record.path,
            character_id=char.id,
            dialogue_id=dialogue_id,
            text=text,
            voice=voice,
            metadata=dict(record.metadata),
            cached=cached,
        )

    @staticmethod
    def _log_prefetch(req: ResolveRequest):
        def _done(task: asyncio.Task) -> None:
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.warning("Prefetch of %r for %s failed: %s", req.text, req.character, exc)

        return _done
