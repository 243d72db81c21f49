"""LLM gateway with ordered credential failover, via LiteLLM.

Credentials are tried in order. A declarative FailoverPolicy decides, per
failure, whether the next credential may help (rate limit, bad key,
request too large for this provider) or whether the request itself is the
problem and the call should fail at once. The policy never sees HTTP; it
only sees the status code LiteLLM attaches to its exceptions.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, FrozenSet, List, Optional, Sequence

from json_repair import repair_json

from ..exceptions import ProviderError, ProviderExhaustedError, ReadmeBotError
from .context_builder import FileCandidate, GenerationContext
from .prompts import SELECTION_SYSTEM_PROMPT, SYSTEM_PROMPT, build_selection_prompt, build_user_prompt
from .quality_assessor import QualityAssessment

logger = logging.getLogger(__name__)

_FENCED_MARKDOWN = re.compile(r"^\s*```(?:markdown|md)?[ \t]*\n(.*?)\n```\s*$", re.DOTALL | re.IGNORECASE)

SELECTION_MAX_OUTPUT_TOKENS = 1024


class FailoverAction(str, Enum):
    ROTATE = "rotate"
    FAIL_FAST = "fail_fast"


@dataclass(frozen=True)
class FailoverPolicy:
    """Maps a failure to an action. Unknown failures fail fast."""

    rotate_on_status: FrozenSet[int] = frozenset({429, 401, 413})

    def decide(self, exc: BaseException) -> FailoverAction:
        if status_of(exc) in self.rotate_on_status:
            return FailoverAction.ROTATE
        return FailoverAction.FAIL_FAST


@dataclass(frozen=True)
class Credential:
    model: str
    api_key: str = field(repr=False)
    api_base: Optional[str] = None
    label: str = ""

    @property
    def provider(self) -> str:
        return self.model.split("/", 1)[0] if "/" in self.model else self.model


def build_credentials(model: str, api_keys: Sequence[str], api_base: Optional[str] = None) -> List[Credential]:
    """One credential per key for ``model``, labelled without exposing the key."""
    if not model:
        return []
    return [
        Credential(model=model, api_key=key, api_base=api_base or None, label=f"{model}#{index + 1}")
        for index, key in enumerate(api_keys)
    ]


def status_of(exc: BaseException) -> Optional[int]:
    """HTTP status carried by a LiteLLM (or gateway) exception, if any."""
    status = getattr(exc, "status_code", None)
    if status is None:
        status = getattr(exc, "upstream_status", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def unwrap_markdown(text: str) -> str:
    """Strip a single ```markdown fence wrapped around the whole reply."""
    match = _FENCED_MARKDOWN.match(text or "")
    return match.group(1) if match else (text or "")


class GenerationGateway:
    """
    Synthesis and selection calls against an ordered credential list.

    Args:
        credentials: Tried in order for synthesis.
        policy: Failure-class to action mapping.
        selection_credentials: Cheap model for the optional selection pass;
            empty disables it.
        max_output_tokens: Default completion size for synthesis.
        timeout: Seconds per provider call.
        completion_fn: ``litellm.completion`` unless injected.
    """

    def __init__(
        self,
        credentials: Sequence[Credential],
        policy: Optional[FailoverPolicy] = None,
        selection_credentials: Optional[Sequence[Credential]] = None,
        max_output_tokens: int = 8192,
        timeout: float = 60,
        completion_fn: Optional[Callable[..., Any]] = None,
    ):
        self.credentials = list(credentials)
        self.policy = policy or FailoverPolicy()
        self.selection_credentials = list(selection_credentials or [])
        self.max_output_tokens = max_output_tokens
        self.timeout = timeout
        if completion_fn is None:
            import litellm
            completion_fn = litellm.completion
        self._completion = completion_fn

    @property
    def selection_enabled(self) -> bool:
        return bool(self.selection_credentials)

    def complete(self, system_prompt: str, user_prompt: str, max_output_tokens: Optional[int] = None) -> str:
        """Run one completion with failover across the synthesis credentials."""
        return self._complete_with(self.credentials, system_prompt, user_prompt, max_output_tokens or self.max_output_tokens)

    def generate(self, context: GenerationContext, assessment: QualityAssessment) -> str:
        """Synthesize README markdown for ``context``.

        Raises:
            ProviderExhaustedError: every credential failed with a rotatable error.
            ProviderError: a non-rotatable failure, or an empty reply.
        """
        text = self.complete(SYSTEM_PROMPT, build_user_prompt(context, assessment))
        markdown = unwrap_markdown(text).strip()
        if not markdown:
            raise ProviderError("Model returned an empty README")
        return markdown + "\n"

    def select_files(self, candidates: Sequence[FileCandidate], limit: int) -> List[str]:
        """Prune ranked candidates with the cheap model, seeing metadata only.

        Falls back to the unpruned candidate list on any failure: the
        selection pass is an optimisation, never a reason to fail a job.
        """
        all_paths = [c.path for c in candidates]
        if not self.selection_enabled or len(candidates) <= limit:
            return all_paths

        try:
            raw = self._complete_with(
                self.selection_credentials,
                SELECTION_SYSTEM_PROMPT,
                build_selection_prompt(candidates, limit),
                SELECTION_MAX_OUTPUT_TOKENS,
            )
            chosen = self._parse_selection(raw, set(all_paths), limit)
        except (ReadmeBotError, ValueError, TypeError) as e:
            logger.warning("File selection pass failed, using ranked list: %s", e)
            return all_paths

        if not chosen:
            logger.warning("File selection pass returned no known paths, using ranked list")
            return all_paths

        logger.info(f"Selection pass kept {len(chosen)} of {len(all_paths)} candidate files")
        return chosen

    @staticmethod
    def _parse_selection(raw: str, known: set, limit: int) -> List[str]:
        text = unwrap_markdown(raw).strip()
        if text.startswith("```"):
            text = text.strip("`").split("\n", 1)[-1]
        parsed = json.loads(repair_json(text))
        if isinstance(parsed, dict):
            parsed = parsed.get("files") or parsed.get("paths") or []
        if not isinstance(parsed, list):
            raise ValueError(f"Expected a JSON array, got {type(parsed).__name__}")

        chosen: List[str] = []
        for item in parsed:
            path = item.get("path") if isinstance(item, dict) else item
            if isinstance(path, str) and path in known and path not in chosen:
                chosen.append(path)
        return chosen[:limit]

    def _complete_with(
        self,
        credentials: Sequence[Credential],
        system_prompt: str,
        user_prompt: str,
        max_output_tokens: int,
    ) -> str:
        last_cause: Optional[BaseException] = None

        for index, credential in enumerate(credentials):
            try:
                return self._call(credential, system_prompt, user_prompt, max_output_tokens)
            except Exception as exc:
                action = self.policy.decide(exc)
                status = status_of(exc)
                if action == FailoverAction.FAIL_FAST:
                    logger.error(
                        "Provider call failed, not rotating",
                        extra={"credential": credential.label, "upstream_status": status, "error_type": type(exc).__name__},
                    )
                    if isinstance(exc, ProviderError):
                        raise
                    raise ProviderError(
                        f"{credential.provider} call failed: {type(exc).__name__}: {exc}",
                        provider=credential.provider,
                        upstream_status=status,
                    ) from exc

                last_cause = exc
                logger.warning(
                    "Provider credential failed, rotating",
                    extra={
                        "credential": credential.label,
                        "upstream_status": status,
                        "remaining": len(credentials) - index - 1,
                    },
                )

        raise ProviderExhaustedError(len(credentials), last_cause)

    def _call(self, credential: Credential, system_prompt: str, user_prompt: str, max_output_tokens: int) -> str:
        kwargs = {
            "model": credential.model,
            "api_key": credential.api_key,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "max_tokens": max_output_tokens,
            "timeout": self.timeout,
        }
        if credential.api_base:
            kwargs["api_base"] = credential.api_base

        response = self._completion(**kwargs)
        try:
            content = response.choices[0].message.content
        except (AttributeError, IndexError, KeyError, TypeError) as e:
            raise ProviderError(
                f"Invalid response from {credential.provider}", provider=credential.provider
            ) from e
        return content or ""
