# storyflow/base_utils.py

import logging
import re

import commentjson
import yaml
from json_repair import repair_json

from storyflow.app_config import AI_TIMEOUT, PROJECT_ID, REGION
from storyflow.llm_client import ChatLlmClient, LlmClient

logger = logging.getLogger("storyflow")


class BaseUtils():

    # -----------------------
    # General Utils
    # -----------------------

    def clean_triple_backticks(self, code) -> str:
        pattern = r'```[a-zA-Z]*\n?|```\n?'
        return re.sub(pattern, '', code)

    def unsafe_string_format(self, dest_string, print_unused_keys_report=True, **kwargs):
        """
        Formats a destination string by replacing placeholders with corresponding values from kwargs.

        it works differently from the standard "format" method as instead of looking for all the potential keys,
        looks only for the keys as passed in kwargs, so literal JSON braces in prompts survive untouched.
        """
        missing_keys = []

        def replacer(match):
            key = match.group(1)
            if key in kwargs:
                return str(kwargs[key])
            else:
                missing_keys.append(key)
                return match.group(0)  # Leave the placeholder unchanged

        pattern = re.compile(r'\{(\w+)\}')
        result = pattern.sub(replacer, dest_string)
        if missing_keys and print_unused_keys_report:
            logger.debug(f"Missing keys within string-to-format in unsafe_string_format: {', '.join(missing_keys)}")
        return result

    def load_fault_tolerant_json(self, json_str: str):
        """
        Parse model output that is supposed to be a JSON object.
        Tries strict JSON-with-comments first, then YAML, then a repaired copy.
        Raises ValueError when nothing yields a mapping.
        """
        def load_json(raw):
            err = ""
            try:
                return commentjson.loads(raw), ""
            except Exception as e:
                err = str(e)
            try:
                data = yaml.safe_load(raw)
                if isinstance(data, dict):
                    return data, ""
                err += "\n--\nYAML parsing did not produce a mapping"
            except Exception as e:
                err += "\n--\n" + str(e)
            return None, err

        cleaned = self.clean_triple_backticks(json_str or "").strip()
        data, err = load_json(cleaned)
        if isinstance(data, dict):
            return data

        data, err = load_json(repair_json(cleaned))
        if isinstance(data, dict):
            return data

        raise ValueError(f"load_fault_tolerant_json: JSON parsing failed: {err} \n- Original JSON: {json_str}")

    # -----------------------
    # LLM base plumbing
    # -----------------------

    llm_timeout: float = AI_TIMEOUT

    def _build_llms_for_model(self, model_name: str, timeout: float | None = None):
        """
        Build per-request LLM instances for the given model name.
        Falls back to None/None if creation fails.
        """
        if not timeout:
            timeout = self.llm_timeout
        try:
            llm = LlmClient(
                model_name=model_name,
                vertex_project=PROJECT_ID,
                vertex_region=REGION,
                timeout=timeout
            )
            chat_llm = ChatLlmClient(
                model_name=model_name,
                vertex_project=PROJECT_ID,
                vertex_region=REGION,
                timeout=timeout
            )
            return llm, chat_llm
        except Exception as e:
            logger.warning(f"Could not initialize LLMs for model {model_name}: {e}")
            return None, None
