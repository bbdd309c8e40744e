import asyncio

from dotenv import load_dotenv

from embedling import Embedder
from embedling.utils.logging import setup_logging

load_dotenv()

DOCUMENTS = [
    "Once upon a time",
    "there was a girl named Goldilocks",
    "who wandered into a house in the woods",
    "and they all lived happily ever after",
]


def dot(a: list[float], b: list[float]) -> float:
    return sum(x * y for x, y in zip(a, b))


async def main() -> None:
    """Embed documents one call per document and let the embedder pool them."""
    setup_logging()
    async with Embedder(task_type="search_document") as embedder:
        embeddings = await asyncio.gather(*(embedder.embed(document) for document in DOCUMENTS))
        print(f"Embedded {len(embeddings)} documents using {embedder.tokens_used} tokens")
        for document, embedding in zip(DOCUMENTS[1:], embeddings[1:]):
            print(f"{dot(embeddings[0], embedding):.3f}  {document}")


if __name__ == "__main__":
    asyncio.run(main())
