"""CRUD API for Lighter DEX credentials."""

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from perpbot.api.deps import get_current_operator, get_runtime
from perpbot.database import get_session
from perpbot.engine.runtime import Runtime
from perpbot.models.bot import Bot
from perpbot.models.credential import Credential
from perpbot.schemas.credential import CredentialCreate, CredentialUpdate, CredentialRead
from perpbot.services.lighter_client import LighterClient

router = APIRouter(prefix="/api/credentials", tags=["credentials"], dependencies=[Depends(get_current_operator)])


def _get_credential(session: Session, cred_id: int) -> Credential:
    cred = session.get(Credential, cred_id)
    if not cred:
        raise HTTPException(status_code=404, detail="Credential not found")
    return cred


@router.get("", response_model=list[CredentialRead])
def list_credentials(owner_wallet: str | None = None, session: Session = Depends(get_session)):
    stmt = select(Credential)
    if owner_wallet is not None:
        stmt = stmt.where(Credential.owner_wallet == owner_wallet)
    return session.exec(stmt).all()


@router.post("", response_model=CredentialRead, status_code=201)
def create_credential(
    data: CredentialCreate,
    session: Session = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    cred = Credential(
        name=data.name,
        owner_wallet=data.owner_wallet,
        lighter_host=data.lighter_host,
        api_key_index=data.api_key_index,
        private_key_encrypted=runtime.secrets.encrypt(data.private_key),
        account_index=data.account_index,
        l1_address=data.l1_address,
    )
    session.add(cred)
    session.commit()
    session.refresh(cred)
    return cred


@router.get("/{cred_id}", response_model=CredentialRead)
def get_credential(cred_id: int, session: Session = Depends(get_session)):
    return _get_credential(session, cred_id)


@router.put("/{cred_id}", response_model=CredentialRead)
def update_credential(
    cred_id: int,
    data: CredentialUpdate,
    session: Session = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    cred = _get_credential(session, cred_id)

    update_data = data.model_dump(exclude_unset=True)
    if "private_key" in update_data:
        pk = update_data.pop("private_key")
        if pk is not None:
            cred.private_key_encrypted = runtime.secrets.encrypt(pk)

    for key, value in update_data.items():
        setattr(cred, key, value)

    session.add(cred)
    session.commit()
    session.refresh(cred)
    return cred


@router.delete("/{cred_id}", status_code=204)
def delete_credential(cred_id: int, session: Session = Depends(get_session)):
    cred = _get_credential(session, cred_id)
    in_use = session.exec(select(Bot.id).where(Bot.credential_id == cred_id)).first()
    if in_use is not None:
        raise HTTPException(status_code=409, detail="Credential is used by a bot. Delete the bot first.")
    session.delete(cred)
    session.commit()


@router.post("/{cred_id}/test")
async def test_credential(
    cred_id: int,
    session: Session = Depends(get_session),
    runtime: Runtime = Depends(get_runtime),
):
    """Test connectivity to Lighter using this credential."""
    cred = _get_credential(session, cred_id)

    try:
        with runtime.secrets.open_secret(cred.private_key_encrypted) as key_buf:
            client = LighterClient(
                host=cred.lighter_host,
                private_key=key_buf.decode(),
                api_key_index=cred.api_key_index,
                account_index=cred.account_index,
            )
        try:
            return await client.test_connection()
        finally:
            await client.close()
    except Exception as e:
        return {"status": "error", "message": str(e)}
