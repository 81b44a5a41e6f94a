import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Literal

from botocore.exceptions import ClientError
from pydantic import BaseModel, EmailStr
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from data_access.airtable import AirtableDataAccess
from models.donation import Communication

logger = logging.getLogger(__name__)


def format_amount(amount: Decimal, currency: str) -> str:
    if currency.upper() == "USD":
        return f"${amount:.2f}"
    return f"{amount:.2f} {currency.upper()}"


class Receipt(BaseModel):
    email_to: EmailStr
    name: str
    amount: Decimal
    currency: str
    is_recurring: bool = False
    donation_date: datetime


class NotificationService:
    def __init__(self, client, from_email: str, organization_name: str):
        self.ses_client = client
        self.from_email = from_email
        self.organization_name = organization_name

    def compose_receipt(self, receipt: Receipt) -> tuple[str, str]:
        amount = format_amount(receipt.amount, receipt.currency)
        kind = "monthly " if receipt.is_recurring else ""
        subject = f"Thank You for Your Donation to {self.organization_name}"
        body_text = (
            f"Dear {receipt.name},\n\n"
            f"Thank you for your {kind}donation of {amount} to {self.organization_name}.\n\n"
            f"Amount: {amount}\n"
            f"Type: {'Monthly recurring' if receipt.is_recurring else 'One-time'}\n"
            f"Date: {receipt.donation_date:%B %d, %Y}\n\n"
            f"We appreciate your support!"
        )
        return subject, body_text

    @retry(
        wait=wait_exponential(multiplier=1, min=1, max=4),
        stop=stop_after_attempt(3),
        retry=retry_if_exception_type(ClientError),
        reraise=True
    )
    def send_donation_receipt(self, receipt: Receipt) -> str:
        subject, body_text = self.compose_receipt(receipt)

        response = self.ses_client.send_email(
            Source=self.from_email,
            Destination={'ToAddresses': [receipt.email_to]},
            Message={
                'Subject': {'Data': subject},
                'Body': {'Text': {'Data': body_text}}
            }
        )

        logger.info("Sent donation receipt", extra={"message_id": response.get("MessageId")})
        return response.get("MessageId", "")


@dataclass
class DispatchResult:
    status: Literal["Sent", "Failed", "Skipped"]
    communication_id: str | None = None
    errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors


class NotificationDispatcher:
    """
    Sends the receipt and logs a Communication record.

    The two steps fail independently and neither raises: a failed send is
    recorded as a ``Failed`` communication, a failed record write is logged.
    """

    def __init__(self, sender: NotificationService, data_access: AirtableDataAccess):
        self.sender = sender
        self.data_access = data_access

    async def dispatch(
        self,
        *,
        donation_id: str,
        donor_id: str,
        email: str | None,
        name: str,
        amount: Decimal,
        currency: str,
        is_recurring: bool,
        donation_date: datetime,
    ) -> DispatchResult:
        if not email:
            logger.info(f"No donor email for donation {donation_id}, skipping receipt")
            return DispatchResult(status="Skipped")

        result = DispatchResult(status="Sent")
        kind = "monthly " if is_recurring else ""
        subject = f"Thank You for Your Donation to {self.sender.organization_name}"
        body = f"Thank you for your {kind}donation of {format_amount(amount, currency)}."

        try:
            receipt = Receipt(
                email_to=email,
                name=name,
                amount=amount,
                currency=currency,
                is_recurring=is_recurring,
                donation_date=donation_date,
            )
            subject, body = self.sender.compose_receipt(receipt)
            await asyncio.to_thread(self.sender.send_donation_receipt, receipt)
        except Exception as e:
            logger.error(f"Failed to send receipt for donation {donation_id}: {e}")
            result.status = "Failed"
            result.errors.append(f"send: {e}")

        communication = Communication(
            donation_id=donation_id,
            donor_id=donor_id,
            recipient_email=email,
            subject=subject,
            body=body,
            status=result.status,
        )
        try:
            result.communication_id = await self.data_access.create_communication(communication)
        except Exception as e:
            logger.error(f"Failed to create communication record for donation {donation_id}: {e}")
            result.errors.append(f"communication record: {e}")

        return result
