"""
Demographics merge engine.

Two different strategies:

- identifiers and the SSN use replace-set: user-supplied identifiers the
  incoming representation no longer carries are detached and removed;
- telecoms and addresses use upsert-by-natural-key and never delete:
  entries missing from the incoming representation are left alone.

System-generated identifiers (MRNs) are never touched by either.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .models import DemographicsDB, IdentifierDB, IdentifierSystemDB, TelecomDB, AddressDB
from .schemas import IdentifierIn, TelecomIn, AddressIn
from .repository import IdentityRepository
from .exceptions import SsnSystemNotFound

logger = logging.getLogger(__name__)


@dataclass
class MergeResult:
    """What a reconciliation pass changed."""
    identifiers_added: List[str] = field(default_factory=list)
    identifiers_removed: List[str] = field(default_factory=list)
    telecoms_added: int = 0
    telecoms_updated: int = 0
    addresses_added: int = 0
    addresses_updated: int = 0

    def summary(self) -> dict:
        """Counts only; identifier values stay out of logs."""
        return {
            "identifiers_added": len(self.identifiers_added),
            "identifiers_removed": len(self.identifiers_removed),
            "telecoms_added": self.telecoms_added,
            "telecoms_updated": self.telecoms_updated,
            "addresses_added": self.addresses_added,
            "addresses_updated": self.addresses_updated,
        }


class DemographicsMergeEngine:
    """
    Reconciles an existing demographics record with an incoming representation.
    """

    def __init__(self, repository: IdentityRepository, ssn_system_code: str):
        self.repository = repository
        self.ssn_system_code = ssn_system_code

    async def merge(
        self,
        demographics: DemographicsDB,
        identifiers: Sequence[IdentifierIn],
        ssn: Optional[str],
        telecoms: Sequence[TelecomIn],
        addresses: Sequence[AddressIn],
    ) -> MergeResult:
        result = MergeResult()
        await self.reconcile_identifiers(demographics, identifiers, result)
        await self.reconcile_ssn(demographics, ssn, result)
        self.upsert_telecoms(demographics, telecoms, result)
        self.upsert_addresses(demographics, addresses, result)
        return result

    # ==================== REPLACE-SET ====================

    async def reconcile_identifiers(
        self,
        demographics: DemographicsDB,
        incoming: Sequence[IdentifierIn],
        result: Optional[MergeResult] = None,
    ) -> MergeResult:
        """
        Make the user-supplied identifiers match the incoming list.

        Raises:
            IdentifierSystemNotFound: an incoming identifier names an unknown system
        """
        result = result or MergeResult()

        # Resolve every system before mutating anything
        wanted = []
        for item in incoming:
            if item.system == self.ssn_system_code:
                continue
            system = await self.repository.get_identifier_system(item.system)
            if system.system_generated:
                logger.debug(f"Ignoring caller-supplied identifier under system-generated system {system.code}")
                continue
            wanted.append((item, system))

        wanted_keys = {item.key for item, _ in wanted}
        user_supplied = [
            i for i in demographics.identifiers
            if not i.identifier_system.system_generated and i.system_code != self.ssn_system_code
        ]
        to_remove = [i for i in user_supplied if i.key not in wanted_keys]

        current_keys = {i.key for i in demographics.identifiers}
        to_add = []
        for item, system in wanted:
            if item.key in current_keys:
                continue
            current_keys.add(item.key)
            to_add.append(await self.repository.resolve_identifier(item.value, system))

        for identifier in to_remove:
            await self._detach(demographics, identifier)
            result.identifiers_removed.append(identifier.system_code)

        for identifier in to_add:
            demographics.identifiers.append(identifier)
            result.identifiers_added.append(identifier.system_code)

        return result

    async def reconcile_ssn(
        self,
        demographics: DemographicsDB,
        ssn: Optional[str],
        result: Optional[MergeResult] = None,
    ) -> MergeResult:
        """
        Treat the SSN as a scalar: replace the existing one iff the value differs.

        Raises:
            SsnSystemNotFound: a new SSN is supplied but the SSN system is not configured
        """
        result = result or MergeResult()
        existing = [i for i in demographics.identifiers if i.system_code == self.ssn_system_code]

        if ssn is not None and [i.value for i in existing] == [ssn]:
            return result

        system = None
        if ssn is not None:
            system = await self.repository.find_identifier_system(self.ssn_system_code)
            if system is None:
                raise SsnSystemNotFound()

        for identifier in existing:
            if identifier.value != ssn:
                await self._detach(demographics, identifier)
                result.identifiers_removed.append(identifier.system_code)

        if ssn is not None and all(i.value != ssn for i in existing):
            identifier = await self.repository.resolve_identifier(ssn, system)
            demographics.identifiers.append(identifier)
            result.identifiers_added.append(system.code)

        return result

    def issue_system_identifiers(
        self,
        demographics: DemographicsDB,
        systems: Sequence[IdentifierSystemDB],
        issuer,
    ) -> List[IdentifierDB]:
        """Attach one freshly issued identifier per system-generated system lacking one."""
        issued = []
        for system in systems:
            if demographics.identifier_for(system.code) is not None:
                continue
            identifier = IdentifierDB(value=issuer.generate_value(), identifier_system=system)
            self.repository.add(identifier)
            demographics.identifiers.append(identifier)
            issued.append(identifier)
        return issued

    async def _detach(self, demographics: DemographicsDB, identifier: IdentifierDB) -> None:
        demographics.identifiers.remove(identifier)
        await self.repository.delete_identifier_if_orphaned(identifier)

    # ==================== UPSERT, NEVER DELETE ====================

    def upsert_telecoms(
        self,
        demographics: DemographicsDB,
        incoming: Sequence[TelecomIn],
        result: Optional[MergeResult] = None,
    ) -> MergeResult:
        result = result or MergeResult()
        for item in incoming:
            existing = next(
                (t for t in demographics.telecoms
                 if t.system == item.system.value and t.use == item.use.value),
                None
            )
            if existing is not None:
                existing.value = item.value
                result.telecoms_updated += 1
            else:
                demographics.telecoms.append(
                    TelecomDB(system=item.system.value, use=item.use.value, value=item.value)
                )
                result.telecoms_added += 1
        return result

    def upsert_addresses(
        self,
        demographics: DemographicsDB,
        incoming: Sequence[AddressIn],
        result: Optional[MergeResult] = None,
    ) -> MergeResult:
        result = result or MergeResult()
        for item in incoming:
            fields = item.model_dump(exclude={"use"})
            existing = next((a for a in demographics.addresses if a.use == item.use.value), None)
            if existing is not None:
                for name, value in fields.items():
                    setattr(existing, name, value)
                result.addresses_updated += 1
            else:
                demographics.addresses.append(AddressDB(use=item.use.value, **fields))
                result.addresses_added += 1
        return result
