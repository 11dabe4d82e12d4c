from chatdesk import prompts


def test_builtin_sub_feature_prompt_wins_without_overrides(store):
    prompt, source = prompts.resolve_system_prompt(store, 'law', 'contracts')
    assert prompt == prompts.DEFAULT_SYSTEM_PROMPTS['law']['contracts']
    assert source == 'default:sub_feature'


def test_stored_overrides_take_precedence(store):
    store.upsert_system_prompt('law', 'custom contracts', sub_feature='contracts')
    store.upsert_system_prompt('law', 'custom law')

    assert prompts.resolve_system_prompt(store, 'law', 'contracts') == ('custom contracts', 'override:sub_feature')
    assert prompts.resolve_system_prompt(store, 'law', 'litigation') == (
        prompts.DEFAULT_SYSTEM_PROMPTS['law']['litigation'],
        'default:sub_feature',
    )
    assert prompts.resolve_system_prompt(store, 'law') == ('custom law', 'override:domain')


def test_unknown_sub_feature_falls_back_to_domain_default(store):
    prompt, source = prompts.resolve_system_prompt(store, 'medicine', 'no-such-feature')
    assert prompt == prompts.DEFAULT_SYSTEM_PROMPTS['medicine']['default']
    assert source == 'default:domain'


def test_global_prompt_used_when_domain_has_nothing(store):
    defaults = {'law': {}}
    assert prompts.resolve_system_prompt(store, 'law', defaults=defaults) == (
        prompts.GLOBAL_PROMPT,
        'default:global',
    )
    store.upsert_system_prompt('law', 'stored global', is_global=True)
    assert prompts.resolve_system_prompt(store, 'law', defaults=defaults) == ('stored global', 'override:global')


def test_build_chat_messages_prepends_system_prompt():
    history = [
        {'role': 'user', 'content': 'Summarize this contract'},
        {'role': 'assistant', 'content': 'Sure.'},
        {'role': 'system', 'content': 'ignored'},
    ]
    messages = prompts.build_chat_messages('You are Lexie.', history)
    assert messages == [
        {'role': 'system', 'content': 'You are Lexie.'},
        {'role': 'user', 'content': 'Summarize this contract'},
        {'role': 'assistant', 'content': 'Sure.'},
    ]


def test_domain_catalogue_lists_sub_features():
    catalogue = {entry['id']: entry for entry in prompts.domain_catalogue()}
    assert set(catalogue) == {'law', 'finance', 'medicine'}
    assert {'id': 'contracts', 'name': 'Contract Analysis'} in catalogue['law']['subFeatures']
    assert 'Cardiology' in catalogue['medicine']['practiceAreas']
