"""
Chunker - Divide documentos largos en chunks de conocimiento.

Este módulo se encarga de:
1. Dividir texto recursivamente (párrafo → línea → oración → palabra)
   con overlap para mantener contexto
2. Opcionalmente separar primero por headers markdown (sección → metadata)
3. Generar títulos "Part N: ..." para cada chunk
4. Evaluar la calidad de cada chunk (largo, título, cierre de oración)
"""

import re
from typing import Dict, List, Optional

DEFAULT_CHUNK_SIZE = 500
DEFAULT_CHUNK_OVERLAP = 100

# Orden de preferencia para cortar: párrafo, línea, oración, palabra, carácter
SEPARATORS = ["\n\n", "\n", ". ", " ", ""]

_SENTENCE_END = (".", "!", "?", '"', "'", ")")
_TITLE_WORDS = 8


def extract_sections(content: str, source: str) -> List[Dict[str, str]]:
    """
    Extrae secciones del markdown basándose en headers (#, ##, ###).

    Args:
        content: Contenido markdown
        source: Nombre del documento fuente (header por defecto)

    Returns:
        Lista de secciones {header, level, text, source}
    """
    sections = []
    header_pattern = r"^(#{1,3})\s+(.+)$"

    current = {"header": source, "level": 0, "lines": []}

    def _flush():
        text = "\n".join(current["lines"]).strip()
        if text:
            sections.append(
                {
                    "header": current["header"],
                    "level": current["level"],
                    "text": text,
                    "source": source,
                }
            )

    for line in content.split("\n"):
        header_match = re.match(header_pattern, line)
        if header_match:
            _flush()
            current = {
                "header": header_match.group(2).strip(),
                "level": len(header_match.group(1)),
                "lines": [],
            }
        else:
            current["lines"].append(line)

    _flush()
    return sections


def _split_on(text: str, separator: str) -> List[str]:
    """Parte el texto por el separador, conservando el punto final de las oraciones."""
    if separator == "":
        return list(text)
    parts = text.split(separator)
    if separator == ". ":
        parts = [p + "." for p in parts[:-1]] + parts[-1:]
    return [p for p in parts if p]


def _merge(pieces: List[str], joiner: str, chunk_size: int, overlap: int) -> List[str]:
    """Agrupa piezas en chunks <= chunk_size, arrastrando ~overlap chars del anterior."""
    chunks: List[str] = []
    window: List[str] = []
    total = 0

    for piece in pieces:
        extra = len(joiner) if window else 0
        if window and total + extra + len(piece) > chunk_size:
            chunk = joiner.join(window).strip()
            if chunk:
                chunks.append(chunk)
            # Descartar desde el inicio hasta quedar dentro del overlap
            while window and (
                total > overlap
                or total + (len(joiner) if window else 0) + len(piece) > chunk_size
            ):
                total -= len(window[0]) + (len(joiner) if len(window) > 1 else 0)
                window.pop(0)
        window.append(piece)
        total += len(piece) + (len(joiner) if len(window) > 1 else 0)

    chunk = joiner.join(window).strip()
    if chunk:
        chunks.append(chunk)
    return chunks


def _recursive_split(
    text: str, separators: List[str], chunk_size: int, overlap: int
) -> List[str]:
    separator = separators[-1]
    remaining: List[str] = []
    for i, candidate in enumerate(separators):
        if candidate == "" or candidate in text:
            separator = candidate
            remaining = separators[i + 1 :]
            break

    joiner = " " if separator == ". " else separator
    pieces = _split_on(text, separator)

    chunks: List[str] = []
    fitting: List[str] = []
    for piece in pieces:
        if len(piece) <= chunk_size:
            fitting.append(piece)
            continue
        if fitting:
            chunks.extend(_merge(fitting, joiner, chunk_size, overlap))
            fitting = []
        if remaining:
            chunks.extend(_recursive_split(piece, remaining, chunk_size, overlap))
        else:
            chunks.append(piece)
    if fitting:
        chunks.extend(_merge(fitting, joiner, chunk_size, overlap))
    return chunks


def generate_title(content: str, index: int) -> str:
    """Título a partir de las primeras palabras de la primera oración."""
    first_sentence = re.split(r"[.!?]", content, maxsplit=1)[0].strip()
    words = first_sentence.split()
    truncated = " ".join(words[:_TITLE_WORDS])
    suffix = "..." if len(words) > _TITLE_WORDS else ""
    return f"Part {index}: {truncated}{suffix}"


def chunk_text(
    text: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
    source: Optional[str] = None,
    section: Optional[str] = None,
) -> List[Dict]:
    """
    Divide un texto en chunks listos para cargar como entradas de conocimiento.

    Args:
        text: Texto a dividir
        chunk_size: Tamaño objetivo de cada chunk en caracteres (default: 500)
        overlap: Overlap entre chunks consecutivos (default: 100)
        source: Documento de origen (se guarda en metadata)
        section: Sección de origen (se guarda en metadata)

    Returns:
        Lista de {title, content, keywords, metadata}
    """
    if not isinstance(text, str) or not text.strip():
        raise ValueError("Text cannot be empty")
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    if not 0 <= overlap < chunk_size:
        raise ValueError("overlap must be >= 0 and smaller than chunk_size")

    pieces = _recursive_split(text.strip(), SEPARATORS, chunk_size, overlap)

    chunks = []
    for i, content in enumerate(pieces):
        metadata = {
            "chunk_index": i,
            "total_chunks": len(pieces),
            "chunk_size": len(content),
        }
        if source:
            metadata["source"] = source
        if section:
            metadata["section"] = section
        chunks.append(
            {
                "title": generate_title(content, i + 1),
                "content": content,
                "keywords": [],
                "metadata": metadata,
            }
        )
    return chunks


def chunk_markdown(
    content: str,
    source: str,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    overlap: int = DEFAULT_CHUNK_OVERLAP,
) -> List[Dict]:
    """Chunking por sección markdown; el header queda en metadata.section."""
    chunks = []
    for sec in extract_sections(content, source):
        chunks.extend(
            chunk_text(
                sec["text"],
                chunk_size=chunk_size,
                overlap=overlap,
                source=source,
                section=sec["header"],
            )
        )
    return chunks


def chunk_quality(length: int) -> str:
    if 300 <= length <= 800:
        return "excellent"
    if 150 <= length <= 1200:
        return "good"
    if 50 <= length <= 2000:
        return "fair"
    return "poor"


def validate_chunk(chunk: Dict) -> Dict:
    """
    Evalúa un chunk.

    Returns:
        {is_valid, warnings, quality}
    """
    warnings = []
    content = chunk.get("content") or ""
    length = len(content)

    if length < 50:
        warnings.append("Chunk is very short (< 50 characters)")
    if length > 2000:
        warnings.append("Chunk is very long (> 2000 characters)")
    if not (chunk.get("title") or "").strip():
        warnings.append("Chunk has no title")
    if not content.strip().endswith(_SENTENCE_END):
        warnings.append("Chunk may end mid-sentence")

    return {
        "is_valid": not warnings,
        "warnings": warnings,
        "quality": chunk_quality(length),
    }
