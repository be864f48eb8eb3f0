"""
voiceroom
~~~~~~~~~

语音房实时在线状态与麦位协调服务。
"""
__version__ = "0.1.0"
