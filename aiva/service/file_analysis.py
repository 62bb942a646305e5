from __future__ import annotations

import asyncio
import json
import time
from typing import Any, Dict, List

from aiva.logging import get_logger, sanitize_error_message
from aiva.service.blob import BlobStorage
from aiva.service.errors import ServerError
from aiva.service.llm import LLMService

logger = get_logger(__name__)

# Rough approximation used for truncation: one token is about four characters
CHARS_PER_TOKEN = 4

ANALYZE_MAX_INPUT_TOKENS = 10000
EXTRACT_MAX_INPUT_TOKENS = 8000
ATTACHMENT_MAX_INPUT_TOKENS = 2000

ANALYSIS_SYSTEM_PROMPT = """You are an expert document analyzer. Analyze the provided document and provide:
1. A concise summary (2-3 sentences)
2. 3-5 key points from the document
3. Overall sentiment (positive, negative, or neutral)
4. Detected language

Format your response as JSON:
{
  "summary": "Concise summary here",
  "keyPoints": ["Point 1", "Point 2", "Point 3"],
  "sentiment": "positive|negative|neutral",
  "language": "English"
}"""

COMPARISON_SYSTEM_PROMPT = """You are an expert at comparing documents. Analyze the provided document summaries and provide:
1. Similarities between the documents
2. Key differences between the documents
3. Which document seems most comprehensive
4. Any notable patterns or trends

Be concise and focus on the most important comparisons."""

EXTRACTION_SYSTEM_PROMPT = (
    "You are an expert at extracting specific information from documents. "
    "Focus only on the requested information and provide concise, accurate responses."
)


def truncate_content(content: str, max_tokens: int) -> str:
    max_chars = max_tokens * CHARS_PER_TOKEN
    if len(content) <= max_chars:
        return content
    logger.warning("file_content_truncated", original_chars=len(content), max_chars=max_chars)
    return content[:max_chars]


def _analysis_from_text(text: str, tokens: int) -> Dict[str, Any]:
    """Fallback when the model ignores the JSON instruction."""
    return {
        "summary": text[:200] + "...",
        "keyPoints": ["Analysis completed successfully"],
        "sentiment": "neutral",
        "language": "English",
        "tokensUsed": tokens,
    }


class FileAnalysisService:
    """LLM-backed summaries, comparisons and extraction over uploaded files."""

    def __init__(self, llm: LLMService, blob: BlobStorage) -> None:
        self.llm = llm
        self.blob = blob

    async def read_text(self, blob_name: str) -> str:
        data = await asyncio.to_thread(self.blob.download, blob_name)
        return data.decode("utf-8", errors="replace")

    async def analyze_file(
        self,
        content: str,
        file_name: str,
        *,
        file_size: int | None = None,
        file_type: str = "text",
    ) -> Dict[str, Any]:
        started = time.monotonic()
        logger.info("file_analysis_started", file_name=file_name)
        try:
            truncated = truncate_content(content, ANALYZE_MAX_INPUT_TOKENS)
            messages = [
                {"role": "system", "content": ANALYSIS_SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": (
                        f"Document: {file_name}\n\nContent:\n{truncated}\n\n"
                        "Please analyze this document and respond in the specified JSON format."
                    ),
                },
            ]
            result = await self.llm.get_chat_completion(
                messages, max_tokens=800, temperature=0.5
            )
            try:
                parsed = json.loads(result.content)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                analysis = {**parsed, "tokensUsed": result.total_tokens}
            else:
                analysis = _analysis_from_text(result.content, result.total_tokens)
        except Exception as exc:
            logger.error("file_analysis_failed", file_name=file_name, error=str(exc))
            raise ServerError(
                f"Failed to analyze file: {sanitize_error_message(str(exc))}"
            ) from exc

        return {
            "fileName": file_name,
            "fileSize": len(content) if file_size is None else file_size,
            "fileType": file_type,
            "summary": analysis.get("summary", ""),
            "keyPoints": analysis.get("keyPoints", []),
            "sentiment": analysis.get("sentiment", "neutral"),
            "language": analysis.get("language", "English"),
            "tokensUsed": analysis.get("tokensUsed", 0),
            "processingTime": int((time.monotonic() - started) * 1000),
        }

    async def compare_files(self, analyses: List[Dict[str, Any]]) -> Dict[str, Any]:
        logger.info("file_comparison_started", file_count=len(analyses))
        summaries = "\n\n".join(f"{a['fileName']}: {a['summary']}" for a in analyses)
        messages = [
            {"role": "system", "content": COMPARISON_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Document Summaries:\n{summaries}\n\n"
                    "Please compare these documents and provide your analysis."
                ),
            },
        ]
        try:
            result = await self.llm.get_chat_completion(
                messages, max_tokens=600, temperature=0.7
            )
        except Exception as exc:
            logger.error("file_comparison_failed", error=str(exc))
            raise ServerError(
                f"Failed to compare files: {sanitize_error_message(str(exc))}"
            ) from exc
        return {"files": analyses, "comparison": result.content}

    async def extract_information(self, content: str, extraction_prompt: str) -> str:
        truncated = truncate_content(content, EXTRACT_MAX_INPUT_TOKENS)
        messages = [
            {"role": "system", "content": EXTRACTION_SYSTEM_PROMPT},
            {
                "role": "user",
                "content": (
                    f"Document content:\n{truncated}\n\n"
                    f"Requested extraction: {extraction_prompt}\n\n"
                    "Please extract only the requested information from the document above."
                ),
            },
        ]
        try:
            # Low temperature for factual extraction
            result = await self.llm.get_chat_completion(
                messages, max_tokens=500, temperature=0.3
            )
        except Exception as exc:
            logger.error("file_extraction_failed", error=str(exc))
            raise ServerError(
                f"Failed to extract information: {sanitize_error_message(str(exc))}"
            ) from exc
        return result.content

    async def extract_file_content(self, blob_name: str, original_name: str) -> Dict[str, Any]:
        """Text of an attachment for inlining into a chat prompt.

        Never raises: unreadable blobs produce a placeholder so the chat turn
        can still go ahead.
        """
        try:
            content = await self.read_text(blob_name)
        except Exception as exc:
            logger.warning(
                "file_content_unavailable",
                blob_name=blob_name,
                original_name=original_name,
                error=str(exc),
            )
            return {
                "fileName": blob_name,
                "originalName": original_name,
                "content": f"[Content not available for file: {original_name}]",
                "size": 0,
            }
        return {
            "fileName": blob_name,
            "originalName": original_name,
            "content": truncate_content(content, ATTACHMENT_MAX_INPUT_TOKENS),
            "size": len(content),
        }
