from __future__ import annotations

"""
Image builder gated by the build fingerprint.

An image artifact is identified by (workspace id, fingerprint): its tag is
<repository>:<fingerprint[:12]>. A build only happens when the fingerprint
differs from the one recorded for the last applied artifact, or when the
engine no longer has that artifact. A failed build raises BuildFailure and
leaves the previous artifact in place; it is never silently reused for a
different fingerprint.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from wr_server.app.engine.base import ContainerEngine, ImageArtifactRef
from wr_server.app.errors import BuildFailure, EngineError
from wr_server.app.reconciler.fingerprint import fingerprint as compute_fingerprint
from wr_server.app.reconciler.labels import LABEL_FINGERPRINT, LABEL_TEMPLATE, managed_labels

logger = logging.getLogger("workspace_reconciler")

_TAG_DIGEST_LENGTH = 12


@dataclass(frozen=True)
class BuildContext:
    """
    Inputs of one image build: directory, Dockerfile name, rendered args.
    """
    context_dir: Path
    dockerfile: str
    build_args: Mapping[str, str]

    def fingerprint(self) -> str:
        return compute_fingerprint(self.context_dir, self.build_args, dockerfile=self.dockerfile)


@dataclass(frozen=True)
class ImageResolution:
    artifact: ImageArtifactRef
    built: bool


def image_tag(repository: str, fingerprint: str) -> str:
    return f"{repository}:{fingerprint[:_TAG_DIGEST_LENGTH]}"


class ImageBuilder:
    """
    Builds workspace images and decides when a rebuild is required.
    """

    def __init__(self, engine: ContainerEngine) -> None:
        self._engine = engine

    def build(
        self,
        context: BuildContext,
        *,
        tag: str,
        fingerprint: str,
        workspace_id: str,
        template: Optional[str] = None,
    ) -> ImageArtifactRef:
        """
        Build and tag an image. Idempotent for a fixed (context, args, tag).

        Raises:
            BuildFailure when the context is malformed or a build step fails.
        """
        if not context.context_dir.is_dir():
            raise BuildFailure(f"build context not found: {context.context_dir}")
        if not (context.context_dir / context.dockerfile).is_file():
            raise BuildFailure(f"dockerfile '{context.dockerfile}' not found in {context.context_dir}")

        labels = managed_labels(workspace_id)
        labels[LABEL_FINGERPRINT] = fingerprint
        if template:
            labels[LABEL_TEMPLATE] = template

        logger.info("Building image %s for workspace %s", tag, workspace_id)
        try:
            image_id = self._engine.build_image(
                context.context_dir,
                dockerfile=context.dockerfile,
                build_args=dict(context.build_args),
                tag=tag,
                labels=labels,
            )
        except EngineError as exc:
            logger.error("Image build failed for workspace %s: %s", workspace_id, exc)
            raise BuildFailure(str(exc)) from exc
        return ImageArtifactRef(tag=tag, fingerprint=fingerprint, image_id=image_id)

    def resolve(
        self,
        context: BuildContext,
        *,
        repository: str,
        workspace_id: str,
        recorded: Optional[ImageArtifactRef],
        template: Optional[str] = None,
        fingerprint: Optional[str] = None,
    ) -> ImageResolution:
        """
        Return the artifact for the current build context, building only when
        the fingerprint changed or the recorded artifact is gone.
        """
        digest = fingerprint or context.fingerprint()
        if recorded is not None and recorded.fingerprint == digest:
            try:
                present = self._engine.image_exists(recorded.tag)
            except EngineError as exc:
                raise BuildFailure(str(exc)) from exc
            if present:
                logger.debug("Image %s up to date for workspace %s; skipping build", recorded.tag, workspace_id)
                return ImageResolution(artifact=recorded, built=False)
            logger.info("Recorded image %s is missing from the engine; rebuilding", recorded.tag)

        artifact = self.build(
            context,
            tag=image_tag(repository, digest),
            fingerprint=digest,
            workspace_id=workspace_id,
            template=template,
        )
        return ImageResolution(artifact=artifact, built=True)


__all__ = [
    "BuildContext",
    "ImageResolution",
    "ImageBuilder",
    "image_tag",
]
