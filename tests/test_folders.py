"""Tests for output folder resolution."""
import asyncio

import pytest
from sqlalchemy import delete, select

from mediagen.folders import FOLDER_OFFSET_X, derive_folder_position, resolve_output_folder
from shared import database
from shared.errors import NodeNotFoundError
from shared.models import Edge, Node

from conftest import PROJECT_ID, SOURCE_BBOX, SOURCE_NODE_ID


async def load_node(node_id):
    async with database.get_db_session() as db:
        result = await db.execute(select(Node).where(Node.project_id == PROJECT_ID, Node.node_id == node_id))
        return result.scalar_one_or_none()


async def folder_nodes():
    async with database.get_db_session() as db:
        result = await db.execute(select(Node).where(Node.project_id == PROJECT_ID, Node.type == "folder"))
        return list(result.scalars().all())


async def edges_from(node_id):
    async with database.get_db_session() as db:
        result = await db.execute(select(Edge).where(Edge.project_id == PROJECT_ID, Edge.from_node == node_id))
        return list(result.scalars().all())


class TestFolderPosition:

    def test_right_of_source(self):
        assert derive_folder_position({"bbox": SOURCE_BBOX}) == {"x": 460 + FOLDER_OFFSET_X, "y": 50}

    @pytest.mark.parametrize("ui", [None, {}, {"bbox": "nope"}, {"bbox": {"x2": "wide"}}])
    def test_fallback_origin(self, ui):
        assert derive_folder_position(ui) == {"x": 0, "y": 0}


class TestResolveOutputFolder:

    async def test_creates_folder_on_first_use(self, project):
        folder = await resolve_output_folder(PROJECT_ID, SOURCE_NODE_ID, "abcdef123456")

        assert folder.created is True
        assert folder.source_node_id == SOURCE_NODE_ID
        assert folder.title == "Midjourney abcdef12"
        assert folder.artifacts == []

        node = await load_node(folder.node_id)
        assert node.type == "folder"
        assert node.meta["artifacts"] == []
        assert node.meta["provider"] == "midjourney"
        assert node.meta["source_job_id"] == "abcdef123456"
        assert node.meta["source_node_id"] == SOURCE_NODE_ID
        assert node.ui["bbox"]["x1"] == 460 + FOLDER_OFFSET_X
        assert node.ui["bbox"]["y1"] == 50

        source = await load_node(SOURCE_NODE_ID)
        assert source.meta["output_folder_id"] == folder.node_id
        assert source.meta["midjourney_job_id"] == "abcdef123456"

        edges = await edges_from(SOURCE_NODE_ID)
        assert [edge.to_node for edge in edges] == [folder.node_id]

    async def test_reuses_folder_across_jobs(self, project):
        first = await resolve_output_folder(PROJECT_ID, SOURCE_NODE_ID, "job-one")
        second = await resolve_output_folder(PROJECT_ID, SOURCE_NODE_ID, "job-two")

        assert second.node_id == first.node_id
        assert second.created is False
        assert len(await folder_nodes()) == 1
        assert len(await edges_from(SOURCE_NODE_ID)) == 1

        source = await load_node(SOURCE_NODE_ID)
        assert source.meta["midjourney_job_id"] == "job-two"

    async def test_concurrent_calls_share_one_folder(self, project):
        results = await asyncio.gather(
            resolve_output_folder(PROJECT_ID, SOURCE_NODE_ID, "job-a"),
            resolve_output_folder(PROJECT_ID, SOURCE_NODE_ID, "job-b"),
            resolve_output_folder(PROJECT_ID, SOURCE_NODE_ID, "job-c"),
        )

        assert len({folder.node_id for folder in results}) == 1
        assert sum(folder.created for folder in results) == 1
        assert len(await folder_nodes()) == 1

    async def test_recreates_deleted_folder(self, project):
        first = await resolve_output_folder(PROJECT_ID, SOURCE_NODE_ID, "job-one")
        async with database.get_db_session() as db:
            await db.execute(delete(Node).where(Node.project_id == PROJECT_ID, Node.node_id == first.node_id))

        second = await resolve_output_folder(PROJECT_ID, SOURCE_NODE_ID, "job-two")

        assert second.created is True
        assert second.node_id != first.node_id
        source = await load_node(SOURCE_NODE_ID)
        assert source.meta["output_folder_id"] == second.node_id

    async def test_provider_specific_keys(self, project):
        folder = await resolve_output_folder(
            PROJECT_ID,
            SOURCE_NODE_ID,
            "gaistudio-abc-123456",
            provider="google_ai_studio",
            job_meta_key="google_ai_job_id",
            title_prefix="Google Studio",
        )

        assert folder.title == "Google Studio gaistudi"
        source = await load_node(SOURCE_NODE_ID)
        assert source.meta["google_ai_job_id"] == "gaistudio-abc-123456"
        assert "midjourney_job_id" not in source.meta

    async def test_missing_source(self, project):
        with pytest.raises(NodeNotFoundError):
            await resolve_output_folder(PROJECT_ID, "missing_node", "job-one")
