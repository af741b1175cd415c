"""The ResolutionRule protocol - the contract every target rule fulfils."""

from typing import Protocol

from .request import InboundRequest


class ResolutionRule(Protocol):
    """One way of finding out where a request should go.

    Rules are tried in order by the `TargetResolver`; the first one that
    returns a candidate wins. A rule only proposes a string. Scheme
    coercion and validation happen once, in the resolver, for all rules.
    """

    name: str

    # Relay rules merge the caller's remaining query params into the target;
    # rewrite rules have already appended the original query themselves.
    merge_query: bool

    def candidate(self, request: InboundRequest) -> str | None:
        """Propose a target URL for `request`, or None if this rule does not apply.

        Args:
            request: The inbound request, already normalised

        Returns:
            A raw target string (scheme optional), or None
        """
        ...
