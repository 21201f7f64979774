"""
Core層

Voice Gatewayのシグナリング、WebRTCネゴシエーション、オーディオデバイス
"""

from .errors import (
    VoiceError,
    VoiceConnectionError,
    CredentialError,
    DeviceError,
    NegotiationError,
    ProtocolError,
)
from .models import (
    VoiceOpcode,
    SessionState,
    VoiceSession,
    VoiceServerCredentials,
    ControlMessage,
    MediaReadyInfo,
    RemoteDescriptionInfo,
    LocalOfferFacts,
)
from .events import StateChanged, SpeakingChanged, VoiceErrorEvent, VoiceEventBus
from .heartbeat import HeartbeatScheduler
from .voice_gateway import ControlChannel
from .webrtc import MediaNegotiator
from .audio import MicrophoneTrack, SilentAudioTrack, RemoteAudioPlayer, acquire_capture_track
from .backend_client import VoiceBackendClient
from .session import SessionCoordinator

__all__ = [
    'VoiceError',
    'VoiceConnectionError',
    'CredentialError',
    'DeviceError',
    'NegotiationError',
    'ProtocolError',
    'VoiceOpcode',
    'SessionState',
    'VoiceSession',
    'VoiceServerCredentials',
    'ControlMessage',
    'MediaReadyInfo',
    'RemoteDescriptionInfo',
    'LocalOfferFacts',
    'StateChanged',
    'SpeakingChanged',
    'VoiceErrorEvent',
    'VoiceEventBus',
    'HeartbeatScheduler',
    'ControlChannel',
    'MediaNegotiator',
    'MicrophoneTrack',
    'SilentAudioTrack',
    'RemoteAudioPlayer',
    'acquire_capture_track',
    'VoiceBackendClient',
    'SessionCoordinator',
]
