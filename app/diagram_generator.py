"""
Mermaid diagram generation through the OpenAI (or Azure OpenAI) chat API.

The model is asked for a fixed response layout (``DIAGRAM_TYPE:``,
``TITLE:`` and a fenced ``mermaid`` block), which ``parse_diagram_response``
turns into a DiagramResult. API failures are classified into transient and
non-retryable errors; transient ones are retried with exponential backoff.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import openai
from openai import AsyncAzureOpenAI, AsyncOpenAI

from app.exceptions import NonRetryableBackendError, PipelineError, TransientBackendError
from app.logging_config import get_logger, log_with_context
from app.models import DiagramResult
from app.retry import call_with_retry, is_transient_error


DIAGRAM_TYPES = ("flowchart", "sequence", "gantt", "class", "state", "auto")
DIRECTIONS = ("TD", "LR", "RL", "BT")
DEFAULT_MAX_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.3

DIAGRAM_DECLARATIONS = (
    "flowchart",
    "graph",
    "sequenceDiagram",
    "classDiagram",
    "stateDiagram",
    "gantt",
    "erDiagram",
    "journey",
    "gitGraph",
    "pie",
    "mindmap",
    "timeline",
)

BRACKET_PAIRS = {"[": "]", "(": ")", "{": "}"}

SYSTEM_PROMPT = """You are an expert at creating Mermaid diagrams. Your task is to convert conversation content into clear, accurate Mermaid diagrams.

Guidelines:
- Choose the most appropriate diagram type (flowchart, sequence, class, state, gantt)
- Use clear, concise labels
- Ensure logical flow and hierarchy
- Follow Mermaid syntax precisely
- Make diagrams that are easy to understand at a glance

Always respond with valid Mermaid syntax that will render properly."""


@dataclass
class MermaidValidation:
    """Result of a lightweight Mermaid syntax check."""
    is_valid: bool
    issues: List[str] = field(default_factory=list)


def build_prompt(text: str, options: Dict[str, Any]) -> str:
    """
    Build the user prompt for a diagram request.

    Args:
        text: Aggregated conversation text
        options: Generation options (``diagram_type``, ``direction``, ``include_title``)

    Returns:
        Prompt asking for the DIAGRAM_TYPE / TITLE / mermaid block layout
    """
    diagram_type = options.get("diagram_type") or "auto"
    hints = []
    if diagram_type != "auto":
        hints.append(f"Create a {diagram_type} diagram.")
    else:
        hints.append("Determine the most appropriate diagram type based on the content.")
    if options.get("direction"):
        hints.append(f"Use {options['direction']} direction for the diagram.")
    if options.get("include_title"):
        hints.append("Include a descriptive title for the diagram.")

    return f'''{" ".join(hints)}

Content to visualize:
"""
{text}
"""

Requirements:
1. Generate valid Mermaid syntax
2. Make the diagram clear and logical
3. Include all important elements from the content
4. Ensure the diagram flows logically

Please provide your response in the following format:
DIAGRAM_TYPE: [type]
TITLE: [title if applicable]
MERMAID_CODE:
```mermaid
[your mermaid code here]
```'''


def parse_diagram_response(response: str) -> DiagramResult:
    """
    Extract diagram type, title and Mermaid code from a model response.

    Raises:
        NonRetryableBackendError: If the response contains no Mermaid code
    """
    kind = "flowchart"
    title = ""
    code_lines: List[str] = []
    in_code_block = False

    for line in response.splitlines():
        stripped = line.strip()
        if in_code_block:
            if stripped == "```":
                in_code_block = False
            else:
                code_lines.append(line)
        elif stripped.startswith("DIAGRAM_TYPE:"):
            kind = stripped[len("DIAGRAM_TYPE:"):].strip() or kind
        elif stripped.startswith("TITLE:"):
            title = stripped[len("TITLE:"):].strip()
        elif stripped == "```mermaid":
            in_code_block = True

    code = "\n".join(code_lines).strip()
    if not code:
        raise NonRetryableBackendError("No mermaid code found in response")

    return DiagramResult(code=code, title=title, kind=kind)


def validate_mermaid_syntax(code: str) -> MermaidValidation:
    """
    Check a diagram for a known declaration and balanced brackets per line.

    This is a sanity check, not a parser; it catches truncated or garbled
    model output.
    """
    issues = []
    lines = [line for line in code.splitlines() if line.strip()]
    if not lines:
        return MermaidValidation(is_valid=False, issues=["Empty diagram code"])

    first = lines[0].strip()
    if not first.startswith(DIAGRAM_DECLARATIONS):
        issues.append(f"Missing diagram declaration: {first[:40]!r}")

    for number, line in enumerate(lines, start=1):
        stack = []
        for char in line:
            if char in BRACKET_PAIRS:
                stack.append(BRACKET_PAIRS[char])
            elif char in BRACKET_PAIRS.values():
                if not stack or stack.pop() != char:
                    stack.append(None)
                    break
        if stack:
            issues.append(f"Unbalanced brackets on line {number}")

    return MermaidValidation(is_valid=not issues, issues=issues)


def classify_openai_error(error: Exception) -> PipelineError:
    """Map an openai exception onto a transient or non-retryable pipeline error."""
    message = f"OpenAI API error: {error}"
    if isinstance(error, (
        openai.APIConnectionError,
        openai.RateLimitError,
        openai.InternalServerError,
    )):
        return TransientBackendError(message)
    if isinstance(error, (
        openai.AuthenticationError,
        openai.PermissionDeniedError,
        openai.BadRequestError,
        openai.NotFoundError,
        openai.UnprocessableEntityError,
    )):
        return NonRetryableBackendError(message)
    if isinstance(error, openai.APIStatusError):
        if error.status_code == 429 or error.status_code >= 500:
            return TransientBackendError(message)
        return NonRetryableBackendError(message)
    if is_transient_error(error):
        return TransientBackendError(message)
    return NonRetryableBackendError(message)


def build_openai_client(settings) -> Optional[AsyncOpenAI]:
    """
    Build the async client for the configured diagram provider.

    Returns:
        AsyncOpenAI or AsyncAzureOpenAI, or None when no credentials are configured
    """
    if settings.diagram_provider.value == "azure":
        if not (settings.azure_openai_api_key and settings.azure_openai_endpoint):
            return None
        return AsyncAzureOpenAI(
            api_key=settings.azure_openai_api_key,
            azure_endpoint=settings.azure_openai_endpoint,
            api_version=settings.azure_openai_api_version,
        )

    if not settings.openai_api_key:
        return None
    return AsyncOpenAI(api_key=settings.openai_api_key, base_url=settings.openai_base_url)


class DiagramGenerator:
    """
    Generates Mermaid diagrams from aggregated conversation text.

    Attributes:
        client: Async OpenAI-compatible client, or None when unconfigured
        model: Model name (or Azure deployment name)
        max_attempts: Attempts per call for transient failures
        base_delay_ms: Backoff base delay
        max_delay_ms: Backoff cap
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI],
        model: str,
        max_attempts: int = 3,
        base_delay_ms: int = 1000,
        max_delay_ms: int = 10000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.client = client
        self.model = model
        self.max_attempts = max_attempts
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self._sleep = sleep
        self.logger = get_logger(__name__)

    @classmethod
    def from_settings(cls, settings) -> "DiagramGenerator":
        model = settings.openai_model
        if settings.diagram_provider.value == "azure" and settings.azure_openai_deployment:
            model = settings.azure_openai_deployment
        return cls(
            client=build_openai_client(settings),
            model=model,
            max_attempts=settings.diagram_max_attempts,
        )

    def is_configured(self) -> bool:
        return self.client is not None

    async def generate(self, text: str, options: Optional[Dict[str, Any]] = None) -> DiagramResult:
        """
        Generate a diagram for ``text``.

        Args:
            text: Aggregated conversation text (non-empty)
            options: Generation options

        Returns:
            DiagramResult with the Mermaid code, title and diagram type

        Raises:
            TransientBackendError: If transient failures persisted through every attempt
            NonRetryableBackendError: On authentication/request errors or unusable output
        """
        if self.client is None:
            raise NonRetryableBackendError("Diagram generation backend is not configured")

        options = options or {}
        result = await call_with_retry(
            lambda: self._complete(text, options),
            max_attempts=self.max_attempts,
            base_delay_ms=self.base_delay_ms,
            max_delay_ms=self.max_delay_ms,
            sleep=self._sleep,
            operation_name="Diagram generation",
        )

        validation = validate_mermaid_syntax(result.code)
        if not validation.is_valid:
            log_with_context(
                self.logger,
                "warning",
                "Generated diagram failed syntax check",
                diagram_kind=result.kind,
                issues=validation.issues,
            )
        return result

    async def _complete(self, text: str, options: Dict[str, Any]) -> DiagramResult:
        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(text, options)},
                ],
                max_tokens=options.get("max_tokens") or DEFAULT_MAX_TOKENS,
                temperature=options.get("temperature", DEFAULT_TEMPERATURE),
                top_p=0.9,
            )
        except openai.OpenAIError as e:
            raise classify_openai_error(e) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise TransientBackendError("No response received from the model")

        result = parse_diagram_response(content)
        usage = getattr(response, "usage", None)
        log_with_context(
            self.logger,
            "info",
            "Diagram generated",
            model=self.model,
            diagram_kind=result.kind,
            code_length=len(result.code),
            tokens_used=getattr(usage, "total_tokens", None),
        )
        return result
