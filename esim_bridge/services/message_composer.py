"""
Delivery message templates.

Compact English templates for Sellauth's delivery box; lines stay short to
avoid word wrapping. %ESIM_LIST% is replaced by one block per eSIM and
%COUNT% by the number of eSIMs. Pools can be replaced from a YAML file with
`single:` and `multi:` lists (ESIM_BRIDGE_TEMPLATES_PATH).
"""

from __future__ import annotations

import logging
import random
from typing import Dict, List, Optional, Sequence

import yaml

from esim_bridge.services.provisioning_client import ProvisionedEsim

logger = logging.getLogger(__name__)

_SETUP_SINGLE = """📲 {heading}
1. Open the link above.
2. Scan QR or tap Install.
3. Enable Data Roaming!"""

SINGLE_TEMPLATES: List[str] = [
    "✅ Your eSIM is ready!\n\n%ESIM_LIST%\n\n" + _SETUP_SINGLE.format(heading="Setup:"),
    "🎉 Order complete!\n\n%ESIM_LIST%\n\n" + _SETUP_SINGLE.format(heading="Next steps:"),
    "🌍 eSIM activated!\n\n%ESIM_LIST%\n\n" + _SETUP_SINGLE.format(heading="How to install:"),
    "📬 eSIM delivered!\n\n%ESIM_LIST%\n\n" + _SETUP_SINGLE.format(heading="To activate:"),
    "🚀 All set!\n\n%ESIM_LIST%\n\n" + _SETUP_SINGLE.format(heading="Quick setup:"),
    "✨ eSIM is live!\n\n%ESIM_LIST%\n\n" + _SETUP_SINGLE.format(heading="Get started:"),
    "📦 Delivery done!\n\n%ESIM_LIST%\n\n" + _SETUP_SINGLE.format(heading="Install now:"),
]

MULTI_TEMPLATES: List[str] = [
    "✅ %COUNT% eSIMs ready!\n\n%ESIM_LIST%\n\n📲 Setup:\n"
    "1. Open each link above.\n2. Scan QR or tap Install.\n3. Enable Data Roaming!",
    "🎉 %COUNT% eSIMs delivered!\n\n%ESIM_LIST%\n\n📲 Next steps:\n"
    "1. Install one by one.\n2. Scan QR or tap Install.\n3. Enable Data Roaming!",
    "📦 %COUNT% eSIMs ready!\n\n%ESIM_LIST%\n\n📲 How to install:\n"
    "1. Open each link above.\n2. Scan QR or tap Install.\n3. Enable Data Roaming!",
    "🚀 %COUNT% eSIMs – let's go!\n\n%ESIM_LIST%\n\n📲 Quick setup:\n"
    "1. Open each link above.\n2. Scan QR or tap Install.\n3. Enable Data Roaming!",
]


def format_esim_block(esim: ProvisionedEsim, index: int, total: int) -> str:
    lines = []
    if total > 1:
        lines.append(f"── eSIM {index + 1} of {total} ──")
    lines.append("ICCID:")
    lines.append(esim.iccid)
    if esim.install_url:
        lines.append("Install link:")
        lines.append(esim.install_url)
    return "\n".join(lines)


class MessageComposer:
    """Renders provisioned eSIMs into the text Sellauth shows the buyer."""

    def __init__(
        self,
        single_templates: Optional[Sequence[str]] = None,
        multi_templates: Optional[Sequence[str]] = None,
        rng: Optional[random.Random] = None,
    ):
        self._single = list(single_templates or SINGLE_TEMPLATES)
        self._multi = list(multi_templates or MULTI_TEMPLATES)
        self._rng = rng or random.Random()

    @classmethod
    def from_yaml(cls, path: str, rng: Optional[random.Random] = None) -> "MessageComposer":
        with open(path, "r", encoding="utf-8") as f:
            data: Dict = yaml.safe_load(f) or {}
        single = [t for t in data.get("single", []) if "%ESIM_LIST%" in t]
        multi = [t for t in data.get("multi", []) if "%ESIM_LIST%" in t]
        if not single and not multi:
            raise ValueError(f"{path}: no templates containing %ESIM_LIST%")
        logger.info("Loaded delivery templates from %s (single=%d, multi=%d)", path, len(single), len(multi))
        return cls(single or None, multi or None, rng=rng)

    def render(self, esims: Sequence[ProvisionedEsim]) -> str:
        if not esims:
            raise ValueError("cannot render a delivery without eSIMs")
        total = len(esims)
        blocks = [format_esim_block(e, i, total) for i, e in enumerate(esims)]
        pool = self._single if total == 1 else self._multi
        template = self._rng.choice(pool)
        return template.replace("%ESIM_LIST%", "\n\n".join(blocks)).replace("%COUNT%", str(total))
