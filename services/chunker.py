from typing import List, Dict, Optional
import hashlib
import tiktoken


class Chunker:
    """Token-aware splitting and truncation (cl100k_base)

    The encoding is loaded on first use.
    """

    def __init__(self, target_tokens: int = 500, overlap_tokens: int = 50):
        self.target_tokens = target_tokens
        self.overlap_tokens = overlap_tokens
        self._encoding = None

    @property
    def encoding(self):
        if self._encoding is None:
            self._encoding = tiktoken.get_encoding("cl100k_base")
        return self._encoding

    def count_tokens(self, text: str) -> int:
        return len(self.encoding.encode(text or ""))

    def truncate(self, text: str, max_tokens: Optional[int] = None) -> str:
        """Cut text to at most max_tokens tokens"""
        max_tokens = max_tokens or self.target_tokens
        tokens = self.encoding.encode(text or "")
        if len(tokens) <= max_tokens:
            return text or ""
        return self.encoding.decode(tokens[:max_tokens])

    def chunk_text(self, text: str) -> List[Dict]:
        """Split text into chunks with overlap"""
        # Split on paragraphs first
        paragraphs = [p for p in (text or "").split("\n\n") if p.strip()]

        chunks = []
        current_chunk = []
        current_tokens = 0

        for para in paragraphs:
            para_tokens = self.count_tokens(para)

            if current_tokens + para_tokens > self.target_tokens and current_chunk:
                chunks.append(self._make_chunk(current_chunk, current_tokens))

                # Start new chunk with the last paragraph as overlap
                overlap = current_chunk[-1]
                if self.count_tokens(overlap) <= self.overlap_tokens:
                    current_chunk = [overlap]
                    current_tokens = self.count_tokens(overlap)
                else:
                    current_chunk = []
                    current_tokens = 0

            current_chunk.append(para)
            current_tokens += para_tokens

        # Add final chunk
        if current_chunk:
            chunks.append(self._make_chunk(current_chunk, current_tokens))

        return chunks

    @staticmethod
    def _make_chunk(paragraphs: List[str], token_count: int) -> Dict:
        chunk_text = "\n\n".join(paragraphs)
        return {
            "text": chunk_text,
            "token_count": token_count,
            "hash": hashlib.sha256(chunk_text.encode()).hexdigest(),
        }
