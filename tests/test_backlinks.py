import pytest
import pytest_asyncio

from notes_rag.backlinks import BacklinkGenerator, wiki_link

NOTES = {
    "bread/sourdough.md": "Sourdough starter needs feeding daily with flour and water.",
    "bread/rye.md": "Rye flour makes a dense sourdough loaf.",
    "garden/tomatoes.md": "Tomato plants need sunlight and regular watering in summer.",
}


def test_wiki_link_uses_note_name():
    assert wiki_link("bread/sourdough.md") == "[[sourdough]]"


@pytest_asyncio.fixture
async def manager(corpus, make_manager):
    corpus.files.update(NOTES)
    m = make_manager()
    await m.index_all()
    return m


@pytest.mark.asyncio
async def test_links_related_notes(manager):
    links = await BacklinkGenerator(manager).generate("Feeding my sourdough starter with rye flour")
    assert set(links) == {"[[sourdough]]", "[[rye]]"}


@pytest.mark.asyncio
async def test_excludes_current_note_and_limits_count(manager):
    links = await BacklinkGenerator(manager).generate(
        "Feeding my sourdough starter with rye flour", k=1, exclude="bread/rye.md"
    )
    assert links == ["[[sourdough]]"]


@pytest.mark.asyncio
async def test_nothing_for_unrelated_text(manager):
    assert await BacklinkGenerator(manager).generate("quantum chromodynamics") == []


@pytest.mark.asyncio
async def test_nothing_before_indexing(make_manager):
    m = make_manager()
    await m.initialize()
    assert await BacklinkGenerator(m).generate("anything") == []
