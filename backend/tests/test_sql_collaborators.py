import asyncio

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from common.models import StateBlob, init_models
from common.persistence import SqlStateBlobStore
from common.schemas import Amount, ListItem, ListPatch
from common.store import SqlMessageStore


async def _session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'bridge.db'}")
    await init_models(engine)
    return engine, sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def test_state_blob_round_trip_with_namespace(tmp_path):
    async def _run():
        engine, factory = await _session_factory(tmp_path)
        try:
            blobs = SqlStateBlobStore(factory, namespace="shopping_bridge.0")
            assert await blobs.read_json("mapping") is None

            await blobs.write_json("mapping", {"version": 4, "messageRef": "r"})
            await blobs.write_json("mapping", {"version": 4, "messageRef": "r2"})
            assert await blobs.read_json("mapping") == {"version": 4, "messageRef": "r2"}

            other = SqlStateBlobStore(factory, namespace="shopping_bridge.1")
            assert await other.read_json("mapping") is None

            async with factory() as db:
                row = await db.get(StateBlob, "shopping_bridge.0.mapping")
                assert row is not None
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_state_blob_ignores_malformed_content(tmp_path):
    async def _run():
        engine, factory = await _session_factory(tmp_path)
        try:
            async with factory() as db:
                db.add(StateBlob(name="broken", value_json="{not json"))
                db.add(StateBlob(name="listy", value_json="[1, 2]"))
                await db.commit()
            blobs = SqlStateBlobStore(factory)
            assert await blobs.read_json("broken") is None
            assert await blobs.read_json("listy") is None
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_message_store_patch_lifecycle(tmp_path):
    async def _run():
        engine, factory = await _session_factory(tmp_path)
        try:
            store = SqlMessageStore(factory)
            assert await store.get_items_by_reference("list-1") is None

            await store.create_list("list-1", {"title": "Shopping", "location": "Supermarket"})
            assert await store.get_items_by_reference("list-1") == []
            assert (await store.get_list_metadata("list-1"))["title"] == "Shopping"

            ghee = ListItem(
                id="a:1",
                name="Lilith Ghee",
                quantity=Amount(val=6, unit="pcs"),
                per_unit=Amount(val=500, unit="g"),
            )
            milk = ListItem(id="a:2", name="Milk")
            await store.apply_patch("list-1", ListPatch(set_items={"a:1": ghee, "a:2": milk}))

            items = await store.get_items_by_reference("list-1")
            assert [it.id for it in items] == ["a:1", "a:2"]
            assert items[0].per_unit == Amount(val=500, unit="g")
            assert items[1].quantity is None

            checked_milk = milk.model_copy(update={"checked": True, "category": "Dairy"})
            bread = ListItem(id="a:3", name="Bread")
            await store.apply_patch(
                "list-1",
                ListPatch(set_items={"a:2": checked_milk, "a:3": bread}, delete_items=["a:1"]),
            )
            items = await store.get_items_by_reference("list-1")
            assert [it.id for it in items] == ["a:2", "a:3"]
            assert items[0].checked is True
            assert items[0].category == "Dairy"

            await store.create_list("list-1", {"title": "Groceries"})
            assert (await store.get_list_metadata("list-1")) == {"title": "Groceries"}
            assert len(await store.get_items_by_reference("list-1")) == 2

            await store.remove_list("list-1")
            assert await store.get_items_by_reference("list-1") is None
            assert await store.get_list_metadata("list-1") is None
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_message_store_ignores_patch_for_unknown_list(tmp_path):
    async def _run():
        engine, factory = await _session_factory(tmp_path)
        try:
            store = SqlMessageStore(factory)
            await store.apply_patch("missing", ListPatch(set_items={"x": ListItem(id="x", name="X")}))
            assert await store.get_items_by_reference("missing") is None
        finally:
            await engine.dispose()

    asyncio.run(_run())
