from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel, Field


class ConnectRequest(BaseModel):
    wallet_address: Optional[str] = None


class UserInfoUpdate(BaseModel):
    username: Optional[str] = Field(default=None, max_length=255)
    hospital_name: Optional[str] = Field(default=None, max_length=255)


class HealthProfileUpdate(BaseModel):
    blood_type: Optional[str] = Field(default=None, max_length=8)
    allergies: Optional[List[str]] = None
    chronic_conditions: Optional[List[str]] = None
    current_medications: Optional[List[str]] = None
    emergency_contact: Optional[str] = None
    emergency_phone: Optional[str] = None
    height_cm: Optional[float] = None
    weight_kg: Optional[float] = None
    organ_donor: Optional[bool] = None


class ProfilePictureRequest(BaseModel):
    # Validated by the identity service so oversize/empty input maps to ValidationError
    profile_picture: Optional[str] = None


class QRGenerateRequest(BaseModel):
    signature: Optional[str] = None


class QRVerifyRequest(BaseModel):
    qr_data: Optional[str] = None


class AccessRequestCreate(BaseModel):
    patient_id: str
    reason: Optional[str] = None
    access_type: Optional[str] = None
    is_emergency: bool = False
    proof_image: Optional[str] = None
    proof_details: Optional[str] = None
    record_id: Optional[str] = None


class RecordUpload(BaseModel):
    title: str
    record_type: str
    description: Optional[str] = None
    file_name: Optional[str] = None
    file_type: Optional[str] = None
    file_data: Optional[str] = None
    is_emergency: bool = False


class KYCSubmission(BaseModel):
    full_name: str
    date_of_birth: Optional[str] = None
    national_id: Optional[str] = None
    phone_number: Optional[str] = None
    address: Optional[str] = None
    document_type: Optional[str] = None
    document_number: Optional[str] = None
    professional_license: Optional[str] = None
    institution_name: Optional[str] = None


class RoleApplication(BaseModel):
    role: str
    full_name: Optional[str] = None
    professional_license: Optional[str] = None
    institution_name: Optional[str] = None


class KYCRejectRequest(BaseModel):
    reason: Optional[str] = None


class RoleGrantRequest(BaseModel):
    role: str


class StatusChangeRequest(BaseModel):
    status: str
