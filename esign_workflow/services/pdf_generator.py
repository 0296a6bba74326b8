"""PDF renderer for signed contracts

The body is free text with placeholders in either of two forms, ``[VAR]``
or ``{{VAR}}``. Placeholders are filled from system variables (contract,
signer and signature data) overridden by the contract's own ``variables``.
Unknown placeholders are left untouched so missing data stays visible in the
document.

The rendered PDF is deterministic for a given snapshot (invariant mode), so
the same snapshot always hashes to the same value.
"""

import logging
import re
from abc import ABC, abstractmethod
from io import BytesIO
from typing import Dict, Optional
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER, TA_JUSTIFY
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle
from reportlab.lib.units import cm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from esign_workflow.models.contract import ContractSnapshot, Signature, SignerRole
from esign_workflow.utils.pdf_fonts import get_font_name, register_contract_fonts

logger = logging.getLogger(__name__)

PLACEHOLDER_RE = re.compile(r"\[([A-Za-z0-9_]+)\]|\{\{\s*([A-Za-z0-9_]+)\s*\}\}")

DATE_FORMAT = "%Y-%m-%d"
DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S UTC"


def _signature_for(snapshot: ContractSnapshot, role: SignerRole) -> Optional[Signature]:
    for signature in snapshot.signatures:
        if signature.role == role:
            return signature
    return None


def system_variables(snapshot: ContractSnapshot) -> Dict[str, str]:
    """Variables every contract body can reference."""
    contract = snapshot.contract
    internal = _signature_for(snapshot, SignerRole.INTERNAL_QUALIFIED)
    external = _signature_for(snapshot, SignerRole.EXTERNAL_SIMPLE)

    values = {
        "CONTRACT_ID": contract.id,
        "CONTRACT_TITLE": contract.title,
        "COMPANY_NAME": snapshot.company_name,
        "CURRENT_DATE": snapshot.rendered_at.strftime(DATE_FORMAT),
        "CREATED_DATE": contract.created_at.strftime(DATE_FORMAT) if contract.created_at else "",
        "EXTERNAL_SIGNER_NAME": contract.external_signer_name,
        "EXTERNAL_SIGNER_EMAIL": contract.external_signer_email,
        "EXTERNAL_SIGNER_DOCUMENT": contract.external_signer_document or "",
        "INTERNAL_SIGNER_NAME": internal.signer_name if internal else "",
        "INTERNAL_SIGNATURE_DATE": internal.signed_at.strftime(DATETIME_FORMAT) if internal else "",
        "EXTERNAL_SIGNATURE_DATE": external.signed_at.strftime(DATETIME_FORMAT) if external else "",
        "FINALIZED_DATE": contract.finalized_at.strftime(DATE_FORMAT) if contract.finalized_at else "",
    }
    return values


def substitute_variables(text: str, variables: Dict[str, str]) -> str:
    """Replace ``[VAR]`` and ``{{VAR}}`` placeholders; lookup is case-insensitive."""
    lookup = {key.upper(): str(value) for key, value in variables.items()}

    def replace(match: re.Match) -> str:
        key = (match.group(1) or match.group(2)).upper()
        return lookup.get(key, match.group(0))

    return PLACEHOLDER_RE.sub(replace, text)


class DocumentRenderer(ABC):
    """Turns a contract snapshot into the canonical document bytes."""

    content_type = "application/pdf"
    extension = "pdf"

    @abstractmethod
    def render(self, snapshot: ContractSnapshot) -> bytes:
        """Render the document."""


class ContractPDFRenderer(DocumentRenderer):
    """Generate the signed contract PDF with ReportLab"""

    def __init__(self):
        register_contract_fonts()
        self.font_name = get_font_name()
        self.font_bold = get_font_name(bold=True)
        self._init_styles()

    def _init_styles(self):
        """Initialize paragraph styles"""
        self.styles = {
            'header': ParagraphStyle('Header', fontName=self.font_name,
                fontSize=10, alignment=TA_CENTER, spaceAfter=2, textColor=colors.gray),
            'title': ParagraphStyle('Title', fontName=self.font_bold,
                fontSize=15, alignment=TA_CENTER, spaceAfter=12, spaceBefore=10,
                textColor=colors.HexColor('#1f3a5f')),
            'section': ParagraphStyle('Section', fontName=self.font_bold,
                fontSize=11, spaceBefore=15, spaceAfter=8,
                textColor=colors.HexColor('#1f3a5f')),
            'normal': ParagraphStyle('Normal', fontName=self.font_name,
                fontSize=10, leading=14, alignment=TA_JUSTIFY, spaceAfter=6),
            'small': ParagraphStyle('Small', fontName=self.font_name,
                fontSize=8, leading=10, textColor=colors.gray),
        }

    def render(self, snapshot: ContractSnapshot) -> bytes:
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer, pagesize=A4,
            rightMargin=2*cm, leftMargin=2*cm, topMargin=1.5*cm, bottomMargin=1.5*cm,
            title=snapshot.contract.title, author=snapshot.company_name,
            invariant=1,
        )
        doc.build(self._build_story(snapshot))
        content = buffer.getvalue()
        logger.debug(f"Rendered contract {snapshot.contract.id} ({len(content)} bytes)")
        return content

    def _build_story(self, snapshot: ContractSnapshot) -> list:
        contract = snapshot.contract
        variables = {**system_variables(snapshot), **contract.variables}

        story = [
            Paragraph(escape(snapshot.company_name), self.styles['header']),
            Paragraph(escape(contract.title.upper()), self.styles['title']),
            Paragraph(f"Contract ID: {escape(contract.id)}", self.styles['header']),
            Spacer(1, 15),
        ]

        body = substitute_variables(contract.body, variables)
        for block in re.split(r"\n\s*\n", body.strip()):
            if block.strip():
                story.append(Paragraph(escape(block.strip()).replace("\n", "<br/>"), self.styles['normal']))

        story.append(Spacer(1, 20))
        story.extend(self._build_signatures(snapshot))
        story.append(Spacer(1, 20))
        story.append(Paragraph(
            f"Document generated at {snapshot.rendered_at.strftime(DATETIME_FORMAT)}. "
            "Electronic signatures are backed by the audit trail recorded for this contract.",
            self.styles['small']))
        return story

    def _signature_lines(self, signature: Optional[Signature], fallback_name: str) -> list:
        if signature is None:
            return [escape(fallback_name), "Pending signature"]
        lines = [
            escape(signature.signer_name),
            f"Signed at {signature.signed_at.strftime(DATETIME_FORMAT)}",
        ]
        if signature.certificate:
            lines.append(f"Certificate: {escape(signature.certificate.issuer)}")
            lines.append(f"Thumbprint: {escape(signature.certificate.thumbprint[:24])}")
        else:
            lines.append("Verified by email code")
        if signature.ip_address:
            lines.append(f"IP: {escape(signature.ip_address)}")
        return lines

    def _build_signatures(self, snapshot: ContractSnapshot) -> list:
        """Build signature section"""
        internal = _signature_for(snapshot, SignerRole.INTERNAL_QUALIFIED)
        external = _signature_for(snapshot, SignerRole.EXTERNAL_SIMPLE)

        left = self._signature_lines(internal, snapshot.company_name)
        right = self._signature_lines(external, snapshot.contract.external_signer_name)
        rows = max(len(left), len(right))
        left += [""] * (rows - len(left))
        right += [""] * (rows - len(right))

        sig_data = [["INTERNAL SIGNATURE (QUALIFIED)", "EXTERNAL SIGNATURE"]]
        sig_data += [
            [Paragraph(a, self.styles['small']), Paragraph(b, self.styles['small'])]
            for a, b in zip(left, right)
        ]

        sig_table = Table(sig_data, colWidths=[8.5*cm, 8.5*cm])
        sig_table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (-1, -1), self.font_name),
            ('FONTNAME', (0, 0), (-1, 0), self.font_bold),
            ('FONTSIZE', (0, 0), (-1, 0), 9),
            ('LINEBELOW', (0, 0), (-1, 0), 0.5, colors.gray),
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 4),
        ]))
        return [Paragraph("SIGNATURES", self.styles['section']), sig_table]
