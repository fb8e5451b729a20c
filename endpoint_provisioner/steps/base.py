#!/usr/bin/env python3
"""
Resource Step Contract

A step owns one provider resource (or a tightly coupled pair) and knows how to
check for it, create it, adopt it and delete it. Steps never keep ids of their
own; everything they need is read from the state store passed into each call.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, FrozenSet, Iterable, List, Optional

from ..errors import ProviderError
from ..provider.aws import call, extract, is_not_found

logger = logging.getLogger(__name__)


class ResourceStep(ABC):
    """Base class for concrete AWS steps."""

    name: str = ""
    depends_on: FrozenSet[str] = frozenset()
    produces: FrozenSet[str] = frozenset()

    def __init__(self, provider):
        self.provider = provider
        self.settings = provider.settings

    @abstractmethod
    def exists(self, state) -> bool:
        """Side-effect-free check for the resource this step provisions."""

    @abstractmethod
    def create(self, state) -> Dict[str, str]:
        """Provision the resource and return role -> provider id."""

    @abstractmethod
    def delete(self, state):
        """Deprovision the resource. Already gone counts as success."""

    def adopt(self, state) -> Dict[str, str]:
        """Ids of a pre-existing resource the state store does not record yet."""
        return {}

    def recorded(self, state, role: str) -> Optional[str]:
        return state.get(role) if state.has(role) else None

    def ignore_missing(self, error: ProviderError):
        """Re-raise anything other than a not-found rejection."""
        if not is_not_found(error):
            raise error
        logger.info(f"{self.name}: already gone ({error.code})")

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"


class FallbackStep(ResourceStep):
    """
    Creates with the first alternate that the provider accepts.

    All alternates provision the same roles with progressively reduced scope;
    existence checks, adoption and deletion are delegated to the first one.
    Only provider rejections (errors carrying a code) move on to the next
    alternate; timeouts and transport failures are raised immediately.
    """

    def __init__(self, name: str, alternates: List[ResourceStep], retry_codes: Optional[Iterable[str]] = None):
        if not alternates:
            raise ValueError("FallbackStep needs at least one alternate")
        produced = {frozenset(a.produces) for a in alternates}
        if len(produced) != 1:
            raise ValueError(f"Alternates of '{name}' must produce the same roles")

        self.name = name
        self.alternates = list(alternates)
        self.retry_codes = set(retry_codes) if retry_codes is not None else None
        self.provider = alternates[0].provider
        self.settings = alternates[0].settings
        self.produces = frozenset(alternates[0].produces)
        self.depends_on = frozenset().union(*(a.depends_on for a in alternates))

    @property
    def primary(self) -> ResourceStep:
        return self.alternates[0]

    def exists(self, state) -> bool:
        return self.primary.exists(state)

    def adopt(self, state) -> Dict[str, str]:
        return self.primary.adopt(state)

    def delete(self, state):
        self.primary.delete(state)

    def create(self, state) -> Dict[str, str]:
        last_error: Optional[ProviderError] = None
        for alternate in self.alternates:
            try:
                return alternate.create(state)
            except ProviderError as e:
                if not self._retryable(e):
                    raise
                last_error = e
                logger.warning(f"{self.name}: {alternate.name} rejected ({e}), trying reduced scope")
        raise last_error

    def _retryable(self, error: ProviderError) -> bool:
        if error.code is None:
            return False
        return self.retry_codes is None or error.code in self.retry_codes


class TaggedEc2Step(ResourceStep):
    """
    A single EC2 resource found by its recorded id or, failing that, by the
    project's Name/ProjectId tags.

    Subclasses name the describe call and the response fields; a recorded id
    the provider no longer knows is treated as absent.
    """

    role: str = ""
    suffix: str = ""
    describe_method: str = ""
    collection: str = ""
    id_field: str = ""
    ids_param: str = ""

    def __init__(self, provider):
        super().__init__(provider)
        self.produces = frozenset({self.role})
        self._found: Optional[str] = None

    def is_live(self, item: Dict) -> bool:
        return True

    def scope_filters(self, state) -> List[Dict]:
        """Extra describe filters that narrow the tag lookup."""
        return []

    def items(self, response) -> List[Dict]:
        return response.get(self.collection, [])

    def describe_items(self, **kwargs) -> List[Dict]:
        operation = f"ec2:{self.describe_method}"
        try:
            response = call(operation, getattr(self.provider.ec2, self.describe_method), **kwargs)
        except ProviderError as e:
            if is_not_found(e):
                return []
            raise
        return [item for item in self.items(response) if self.is_live(item)]

    def describe(self, **kwargs) -> List[str]:
        operation = f"ec2:{self.describe_method}"
        return [extract(item, self.id_field, operation=operation) for item in self.describe_items(**kwargs)]

    def lookup(self, resource_id: str) -> Dict:
        """The live description of one resource, or an empty dict."""
        found = self.describe_items(**{self.ids_param: [resource_id]})
        return found[0] if found else {}

    def is_complete(self, resource_id: str, state) -> bool:
        """Whether the calls create makes after the initial one took effect."""
        return True

    def find(self, state) -> Optional[str]:
        recorded = self.recorded(state, self.role)
        if recorded:
            if self.describe(**{self.ids_param: [recorded]}):
                return recorded
            logger.warning(f"{self.name}: recorded {self.role}={recorded} no longer exists")
        found = self.describe(Filters=self.provider.name_filters(self.suffix) + self.scope_filters(state))
        return found[0] if found else None

    def exists(self, state) -> bool:
        # An incomplete resource stays in _found so create can finish it
        self._found = self.find(state)
        if self._found is None:
            return False
        if not self.is_complete(self._found, state):
            logger.warning(f"{self.name}: {self._found} exists but its setup is incomplete, resuming")
            return False
        return True

    def adopt(self, state) -> Dict[str, str]:
        found = self._found or self.find(state)
        if found is None or found == self.recorded(state, self.role):
            return {}
        return {self.role: found}
