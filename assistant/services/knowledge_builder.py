"""Incremental corpus builder.

Layout under the source dir: one folder per category. New files sit in the
category root (staging); once every chunk is embedded they are moved to
`prontos/`, otherwise they stay staged for the next build. Chunks whose
source no longer exists in `prontos/` are dropped on the next build.
"""

import json
import os
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from assistant.errors import UpstreamAIError
from assistant.logging_config import get_logger
from assistant.services.knowledge_service import KnowledgeBase

logger = get_logger("knowledge_builder")

CHUNK_SIZE = 500
CHUNK_OVERLAP = 50
PROCESSED_DIR = "prontos"
SUPPORTED_EXTENSIONS = (".txt", ".md")


@dataclass
class BuildReport:
    category: str
    new_files: List[str] = field(default_factory=list)
    failed_files: List[str] = field(default_factory=list)
    removed_chunks: int = 0
    total_chunks: int = 0


def chunk_text(text: str, size: int = CHUNK_SIZE, overlap: int = CHUNK_OVERLAP) -> List[str]:
    step = size - overlap
    if step <= 0:
        raise ValueError("chunk size must be larger than overlap")
    chunks = []
    for i in range(0, len(text), step):
        chunks.append(text[i : i + size])
        if i + size >= len(text):
            break
    return chunks


def _load_existing(output_file: str) -> list[dict]:
    try:
        with open(output_file, encoding="utf-8") as f:
            data = json.load(f)
    except FileNotFoundError:
        logger.warning(f"No existing knowledge base file {output_file}; creating a new one")
        return []
    except ValueError as e:
        logger.error(f"Existing knowledge base {output_file} is unreadable, rebuilding: {e}")
        return []
    return data if isinstance(data, list) else []


async def _embed_file(path: str, embed: Callable[[str], Awaitable[List[float]]]) -> Optional[list[dict]]:
    """Vectors for every chunk of the file, or None when any chunk failed to embed."""
    with open(path, encoding="utf-8", errors="replace") as f:
        content = f.read()
    source = os.path.basename(path)
    chunks = chunk_text(content)
    vectors = []
    for index, chunk in enumerate(chunks, 1):
        try:
            embedding = await embed(chunk)
        except UpstreamAIError as e:
            logger.error(f"Embedding failed for chunk {index}/{len(chunks)} of {source}, keeping it staged: {e}")
            return None
        vectors.append({"source": source, "content": chunk, "embedding": embedding})
    logger.info(f"Embedded {len(vectors)} chunks from {source}")
    return vectors


async def build_category(
    source_dir: str,
    output_dir: str,
    category: str,
    embed: Callable[[str], Awaitable[List[float]]],
    knowledge_base: Optional[KnowledgeBase] = None,
) -> BuildReport:
    category_path = os.path.join(source_dir, category)
    processed_path = os.path.join(category_path, PROCESSED_DIR)
    output_file = os.path.join(output_dir, f"{category}.json")
    os.makedirs(processed_path, exist_ok=True)
    os.makedirs(output_dir, exist_ok=True)

    report = BuildReport(category=category)

    existing = _load_existing(output_file)
    processed_files = set(os.listdir(processed_path))
    synced = [v for v in existing if v.get("source") in processed_files]
    report.removed_chunks = len(existing) - len(synced)

    new_vectors: list[dict] = []
    for name in sorted(os.listdir(category_path)):
        path = os.path.join(category_path, name)
        if not os.path.isfile(path) or not name.lower().endswith(SUPPORTED_EXTENSIONS):
            continue
        vectors = await _embed_file(path, embed)
        if vectors is None:
            report.failed_files.append(name)
            continue
        new_vectors.extend(vectors)
        os.replace(path, os.path.join(processed_path, name))
        report.new_files.append(name)

    final_vectors = synced + new_vectors
    report.total_chunks = len(final_vectors)
    if final_vectors:
        with open(output_file, "w", encoding="utf-8") as f:
            json.dump(final_vectors, f, ensure_ascii=False)
    elif os.path.exists(output_file):
        os.remove(output_file)

    if knowledge_base is not None:
        knowledge_base.invalidate(category)

    logger.info(
        f"Knowledge base for '{category}' has {report.total_chunks} chunks",
        extra={
            "context": {
                "new_files": report.new_files,
                "failed_files": report.failed_files,
                "removed_chunks": report.removed_chunks,
            }
        },
    )
    return report


async def build_all(
    source_dir: str,
    output_dir: str,
    embed: Callable[[str], Awaitable[List[float]]],
    knowledge_base: Optional[KnowledgeBase] = None,
) -> List[BuildReport]:
    if not os.path.isdir(source_dir):
        logger.warning(f"Knowledge source directory {source_dir} does not exist, nothing to build")
        return []
    reports = []
    for name in sorted(os.listdir(source_dir)):
        if os.path.isdir(os.path.join(source_dir, name)):
            reports.append(await build_category(source_dir, output_dir, name, embed, knowledge_base))
    return reports
