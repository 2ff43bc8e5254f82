SUGGESTIONS_PROMPT = """
As an AI writing assistant, analyze the current chapter content and provide creative suggestions.

STORY CONTEXT:
{story_context}

CHARACTERS:
{characters_text}

CURRENT CHAPTER CONTENT:
{chapter_content}

Based on the above, provide the following in JSON format:
1. Three plot suggestions for how the story could continue
2. Two potential character interactions based on existing characters
3. Two style improvement suggestions with specific details

Format your response as a valid JSON object with these fields:
- plotSuggestions: array of objects with { "content": string }
- characterInteractions: array of objects with { "content": string }
- styleSuggestions: array of objects with { "title": string, "description": string }
"""


CHARACTER_RESPONSE_PROMPT = """
You are going to role-play as a fictional character with the following attributes:

CHARACTER DESCRIPTION:
{character_description}

CHARACTER TRAITS:
{traits_text}

SITUATION:
{situation}

Respond in first person as this character would to the given situation. Keep your response focused, in-character, and under 150 words.
"""


CONTINUE_STORY_PROMPT = """
As a skilled fiction writer, continue the story based on the following context and previous content.

STORY CONTEXT:
{story_context}

CHARACTERS:
{characters_text}

PREVIOUS CONTENT:
{previous_content}
{direction_block}
Continue the story with approximately 200-300 words, maintaining the same style, tone, and narrative voice.
"""


ANALYZE_TEXT_PROMPT = """
Analyze the following text excerpt and provide a brief assessment of:
1. Tone (e.g., dark, hopeful, tense)
2. Pacing (e.g., slow, balanced, rushed)
3. Readability (e.g., simple, moderate, complex)
4. Word variety/repetition issues
5. Three specific suggestions for improvement

Return your analysis as a JSON object with the following fields:
- tone: string
- pacing: string
- readability: string
- wordVariety: string
- suggestions: array of strings

TEXT TO ANALYZE:
{text}
"""


INTERACTIVE_STORY_PROMPT = """
You are a highly creative interactive storyteller. You're running an immersive narrative experience set in the following world:

WORLD CONTEXT:
{world_context}

CHARACTERS:
{characters_text}

CONVERSATION HISTORY:
{conversation_history}

USER INPUT:
{user_input}

Based on the world, characters, and conversation so far, create a compelling story response.

Return your response as a JSON object with these fields:
- content: string (your main story response, 100-200 words, written in engaging prose)
- choices: array of 2-4 strings (options for what the user could do next)

Make your response feel like part of an ongoing adventure, with dramatic elements, character interactions, and vivid imagery.
"""


DETAILED_CHARACTER_PROMPT = """
Create a detailed, psychologically realistic character with the following specifications:

{spec_lines}

Please format the response as a JSON object with the following fields:
name, role, background, personality (array), goals (array), fears (array), relationships (array),
skills (array), appearance, voice, secrets, quirks (array), motivations (array), flaws (array)
"""


# -----------------------
# Conversational builders (genre, world)
# -----------------------

_CONVERSATION_PROTOCOL = """
You talk with the user over several turns. ALWAYS reply with a single JSON object, in one of two shapes:

1) While you still need information, ask ONE focused follow-up question:
   { "status": "question", "message": "<your reply to the user, ending with the question>" }

2) When you have enough to write the full profile:
   { "status": "complete", "message": "<short summary for the user>", "details": { ...profile... } }

Do not wrap the JSON in markdown.
"""


GENRE_CREATOR_PROMPT = """
You are a Genre Creator: an expert in literary genres who helps writers shape the genre of a new story world.
""" + _CONVERSATION_PROTOCOL + """
The "details" object for a complete genre has these fields:
- name: string
- description: string
- themes, tropes, commonSettings, typicalCharacters, plotStructures: arrays of strings
- styleGuide: { "tone": string, "pacing": string, "perspective": string, "dialogueStyle": string }
- recommendedReading, popularExamples, worldbuildingElements: arrays of strings
"""


GENRE_OPENING_MESSAGE = (
    "I want to create a story with the following genre preferences. "
    "Please have a conversation with me about this genre and ask follow-up questions to help me develop it further.\n\n"
)


WORLD_BUILDER_PROMPT = """
You are a World Builder: you help writers design coherent, vivid story worlds that fit their chosen genre.
""" + _CONVERSATION_PROTOCOL + """
The "details" object for a complete world has these fields:
- name, description, era: strings
- geography, locations, conflicts: arrays of strings
- culture: { "socialStructure": string, "beliefs": [string], "customs": [string], "languages": [string] }
- politics: { "governmentType": string, "powerDynamics": string, "majorFactions": [string] }
- economy: { "resources": [string], "trade": string, "currency": string }
- technology: { "level": string, "innovations": [string], "limitations": [string] }
- history: { "majorEvents": [string], "legends": [string] }
- magicSystem (only if the world has magic): { "rules": [string], "limitations": [string], "practitioners": string }
"""


WORLD_OPENING_MESSAGE = (
    "I'm creating a story world using the following details. "
    "Please help me develop it further by asking questions and providing suggestions:\n\n"
)


FINALIZE_NUDGE = (
    "We have discussed this for several turns already. "
    "Unless something essential is missing, reply now with the complete profile."
)


CHAT_SUGGESTIONS_PROMPT = """
You suggest quick replies for a user chatting with a story-building assistant.

Given the last exchange below, propose the short replies the user is most likely to send next.
If the assistant asked the user to pick a genre, offer single-word genre options.

Return a JSON object: { "options": [string, ...], "additional_option": string (optional) }

Conversation:
{conversation_json}
"""
