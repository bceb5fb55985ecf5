"""Expand a configured bridge endpoint into equivalent candidate addresses.

The local bridge is usually reachable under several spellings of the same
address: the numeric loopback, ``localhost``, or the machine's own host
alias, each with or without the ``/run`` route suffix. Every outbound call
walks these candidates in order.
"""

from typing import Optional

RUN_SUFFIX = "/run"
LOOPBACK_IP = "127.0.0.1"
LOOPBACK_NAME = "localhost"


def strip_run_suffix(candidate: str) -> str:
    """Base URL of a candidate (the candidate without its ``/run`` route)."""
    if candidate.endswith(RUN_SUFFIX):
        return candidate[: -len(RUN_SUFFIX)]
    return candidate


class EndpointResolver:
    """Turns one configured endpoint into an ordered, deduplicated candidate list.

    Args:
        endpoint: The configured bridge endpoint, e.g. ``http://127.0.0.1:4141/run``
        host_alias: Optional extra hostname the bridge also answers on
    """

    def __init__(self, endpoint: str, host_alias: Optional[str] = None) -> None:
        self.endpoint = (endpoint or "").strip()
        self.host_alias = (host_alias or "").strip() or None

    def candidates(self) -> list[str]:
        """All equivalent addresses of the run route, in preference order.

        Order: the ``/run`` form before the bare form, and for each form the
        configured spelling first, then the loopback swap, then host alias
        substitutions.
        """
        trimmed = self.endpoint.rstrip("/")
        if not trimmed:
            return []

        with_run = trimmed if trimmed.endswith(RUN_SUFFIX) else f"{trimmed}{RUN_SUFFIX}"
        without_run = strip_run_suffix(trimmed)

        result: list[str] = []
        for value in (with_run, without_run):
            alternates = [value]
            if LOOPBACK_IP in value:
                alternates.append(value.replace(LOOPBACK_IP, LOOPBACK_NAME, 1))
            if LOOPBACK_NAME in value:
                alternates.append(value.replace(LOOPBACK_NAME, LOOPBACK_IP, 1))
            if self.host_alias and self.host_alias not in value:
                alternates.append(value.replace(LOOPBACK_IP, self.host_alias, 1))
                alternates.append(value.replace(LOOPBACK_NAME, self.host_alias, 1))

            for alternate in alternates:
                if alternate and alternate not in result:
                    result.append(alternate)

        return result

    @staticmethod
    def base_url(candidate: str) -> str:
        return strip_run_suffix(candidate)

    def health_urls(self) -> list[str]:
        """Distinct ``<base>/health`` URLs for every candidate."""
        urls: list[str] = []
        for candidate in self.candidates():
            url = f"{self.base_url(candidate)}/health"
            if url not in urls:
                urls.append(url)
        return urls
