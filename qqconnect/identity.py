"""
Build the normalized identity handed to the host's sign-in sink.
sub is the QQ OpenID (stable per app); QQ-specific attributes use urn:qqconnect:* claim types.
"""
from qqconnect.schemas import Claim, NormalizedIdentity, OpenIdResult, ProviderToken, UserProfile

CLAIM_SUBJECT = "sub"
CLAIM_NAME = "name"
CLAIM_NAMESPACE = "urn:qqconnect:"
CLAIM_OPENID = CLAIM_NAMESPACE + "openid"
CLAIM_NICKNAME = CLAIM_NAMESPACE + "nickname"
CLAIM_GENDER = CLAIM_NAMESPACE + "gender"


def assemble_identity(
    authentication_type: str,
    token: ProviderToken,
    openid: OpenIdResult,
    profile: UserProfile,
) -> NormalizedIdentity:
    """
    Map token/openid/profile to claims, in a fixed order.
    The access token itself is never copied into a claim.
    """
    if not openid.openid:
        raise ValueError("openid is required to build an identity")
    if not token.access_token:
        raise ValueError("access_token is required to build an identity")

    claims = [Claim(CLAIM_SUBJECT, openid.openid)]
    if profile.nickname:
        claims.append(Claim(CLAIM_NAME, profile.nickname))
    claims.append(Claim(CLAIM_OPENID, openid.openid))
    if profile.nickname:
        claims.append(Claim(CLAIM_NICKNAME, profile.nickname))
    if profile.gender:
        claims.append(Claim(CLAIM_GENDER, profile.gender))
    for name in UserProfile.AVATAR_FIELDS:
        value = getattr(profile, name)
        if value:
            claims.append(Claim(CLAIM_NAMESPACE + name, value))

    return NormalizedIdentity(
        subject=openid.openid,
        claims=tuple(claims),
        authentication_type=authentication_type,
        name_claim_type=CLAIM_NAME,
    )
